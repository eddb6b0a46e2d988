"""Database module for membership persistence."""

from .models import (
    Base,
    User,
    Membership,
    MembershipCard,
    MembershipCounter,
    WebhookEvent,
    AuditLogEntry,
    MembershipStatus,
    PlanType,
    AuditAction,
    WebhookStatus,
    NON_TERMINAL_STATUSES,
    utcnow,
    to_naive_utc,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    create_tables,
    make_session_factory,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    UserRepository,
    MembershipRepository,
    CardRepository,
    CounterRepository,
    WebhookEventRepository,
    AuditLogRepository,
)

__all__ = [
    # Models
    "Base",
    "User",
    "Membership",
    "MembershipCard",
    "MembershipCounter",
    "WebhookEvent",
    "AuditLogEntry",
    "MembershipStatus",
    "PlanType",
    "AuditAction",
    "WebhookStatus",
    "NON_TERMINAL_STATUSES",
    "utcnow",
    "to_naive_utc",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_tables",
    "make_session_factory",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "UserRepository",
    "MembershipRepository",
    "CardRepository",
    "CounterRepository",
    "WebhookEventRepository",
    "AuditLogRepository",
]
