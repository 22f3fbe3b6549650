"""Transaction persistence: ORM model, engine management and the store."""

from .models import Base, PaymentTransaction
from .session import DatabaseManager, create_async_engine, create_session_factory, normalize_database_url
from .repository import TransactionRepository, TransactionStore
from .locks import KeyedLock

__all__ = [
    "Base",
    "PaymentTransaction",
    "DatabaseManager",
    "create_async_engine",
    "create_session_factory",
    "normalize_database_url",
    "TransactionRepository",
    "TransactionStore",
    "KeyedLock",
]
