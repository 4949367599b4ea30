"""
ISPCore - Repositorios
"""
from ispcore.repositories.handle import Database, TxHandle
from ispcore.repositories.result import Found, Missing, Lookup, require
from ispcore.repositories.customer import CustomerRecord, ServiceRecord

__all__ = [
    "Database", "TxHandle",
    "Found", "Missing", "Lookup", "require",
    "CustomerRecord", "ServiceRecord",
]
