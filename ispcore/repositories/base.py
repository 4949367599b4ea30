"""
ISPCore - Repositorio base
Cada repositorio recibe un `scope`: un context manager async que entrega
la AsyncSession a usar. Fuera de transacción abre una sesión propia con
commit al salir; dentro de `do_in_transaction` entrega la sesión de la
transacción en curso.
"""
from typing import Any, AsyncContextManager, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ispcore.cancellation import CancelToken, guarded
from ispcore.errors import ConflictError

T = TypeVar("T")

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


class BaseRepository:
    entity = "row"

    def __init__(self, scope: SessionScope):
        self._scope = scope

    async def _run(
        self,
        fn: Callable[[AsyncSession], Awaitable[T]],
        cancel: Optional[CancelToken] = None,
    ) -> T:
        async def work():
            try:
                async with self._scope() as session:
                    return await fn(session)
            except IntegrityError as e:
                raise ConflictError(f"Violación de integridad en {self.entity}: {e.orig}").annotate(
                    "repository", entity=self.entity
                ) from e

        return await guarded(work(), cancel)


def apply_changes(row: Any, changes: dict) -> None:
    for key, value in changes.items():
        setattr(row, key, value)
