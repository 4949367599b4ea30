"""
ISPCore - Token de cancelación cooperativa
Se pasa explícitamente a cada operación que bloquea (equipo, BD, KV).
"""
import asyncio
from typing import Awaitable, Optional, TypeVar

from ispcore.errors import OperationCancelled

T = TypeVar("T")


class CancelToken:
    """
    Token de cancelación compartido entre el llamador y la operación.

    Uso:
        cancel = CancelToken()
        profile = await coordinator.create_profile(tenant_id, data, cancel)
        ...
        cancel.cancel()   # desde otra tarea
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelado por el llamador") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelado")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Espera `awaitable` mientras el token no se cancele.
        Si se cancela primero, cancela la tarea y lanza OperationCancelled.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done() and not self._event.is_set():
                # Cancelaron a quien espera, no al token
                task.cancel()
        if task.done():
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelled(self.reason or "cancelado")


async def guarded(awaitable: Awaitable[T], cancel: Optional[CancelToken]) -> T:
    """Atajo: sin token se espera directamente."""
    if cancel is None:
        return await awaitable
    return await cancel.guard(awaitable)
