from app.db.models import (
    Base, User, CreditTransaction, Execution, Message,
    ExecutionType, MessageRole, CreditEntryType,
)
from app.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    "User",
    "CreditTransaction",
    "Execution",
    "Message",
    "ExecutionType",
    "MessageRole",
    "CreditEntryType",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
