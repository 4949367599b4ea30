"""
ISPCore - Handles de base de datos
Dos formas del mismo acceso a repositorios:

- Database: handle de nivel superior. Cada llamada abre su propia sesión
  y hace commit al salir. Es el único que expone do_in_transaction().
- TxHandle: el handle que recibe la función dentro de la transacción.
  Todos sus repositorios comparten la misma sesión y no puede abrir
  otra transacción.
"""
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ispcore.cancellation import CancelToken, guarded
from ispcore.errors import ConflictError, NestedTransactionError
from ispcore.repositories.customer import CustomerRepository, CustomerServiceRepository
from ispcore.repositories.mikrotik import MikrotikRepository
from ispcore.repositories.profile import ProfileRepository
from ispcore.repositories.tenant import TenantRepository, UserRepository


T = TypeVar("T")

_in_transaction: ContextVar[bool] = ContextVar("ispcore_in_transaction", default=False)


class _RepositoryHub:
    """Expone los repositorios sobre el scope de sesión del handle."""

    def __init__(self):
        self.tenants = TenantRepository(self._scope)
        self.users = UserRepository(self._scope)
        self.mikrotiks = MikrotikRepository(self._scope)
        self.profiles = ProfileRepository(self._scope)
        self.customers = CustomerRepository(self._scope)
        self.services = CustomerServiceRepository(self._scope)

    def _scope(self):
        raise NotImplementedError


class TxHandle(_RepositoryHub):
    """Handle dentro de una transacción. No tiene do_in_transaction()."""

    def __init__(self, session: AsyncSession):
        self._session = session
        super().__init__()

    @asynccontextmanager
    async def _scope(self):
        yield self._session


class Database(_RepositoryHub):
    """
    Handle de nivel superior.

    Uso:
        db = Database(AsyncSessionLocal)
        profile = await db.do_in_transaction(lambda tx: tx.profiles.insert(...), cancel)
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        super().__init__()

    @asynccontextmanager
    async def _scope(self):
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    async def do_in_transaction(
        self,
        fn: Callable[[TxHandle], Awaitable[T]],
        cancel: Optional[CancelToken] = None,
    ) -> T:
        """
        Ejecuta fn(tx) dentro de una sola transacción.
        Commit si fn termina bien; rollback si lanza cualquier excepción.
        Llamarlo desde dentro de otra transacción lanza NestedTransactionError.
        """
        if _in_transaction.get():
            raise NestedTransactionError(
                "do_in_transaction() llamado dentro de otra transacción"
            ).annotate("database")

        marker = _in_transaction.set(True)
        try:
            async def work():
                try:
                    async with self._session_factory() as session:
                        async with session.begin():
                            return await fn(TxHandle(session))
                except IntegrityError as e:
                    raise ConflictError(f"Violación de integridad: {e.orig}").annotate("database") from e

            return await guarded(work(), cancel)
        finally:
            _in_transaction.reset(marker)

