"""Record store and attempt log: engine lifecycle, ORM models, repositories."""

from tagchain_escrow.infrastructure.database.engine import (
    build_session_factory,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from tagchain_escrow.infrastructure.database.orm_models import (
    Base,
    EscrowLogEntry,
    EscrowTransaction,
)
from tagchain_escrow.infrastructure.database.repositories import (
    EscrowLogRepository,
    EscrowRepository,
)

__all__ = [
    "Base",
    "EscrowTransaction",
    "EscrowLogEntry",
    "EscrowRepository",
    "EscrowLogRepository",
    "build_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
]
