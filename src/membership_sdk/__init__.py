# membership_sdk package
__version__ = "0.1.0"

from .errors import (
    MembershipError,
    UnauthorizedError,
    SessionError,
    NotFoundError,
    ValidationError,
    ProviderError,
    StorageError,
    ConflictError,
    AdminError,
    CardError,
)
from .database import (
    User,
    Membership,
    MembershipCard,
    MembershipStatus,
    PlanType,
    AuditAction,
    init_db,
    close_db,
    get_db,
)

# Reconciliation exports
from .reconciliation import (
    DiscrepancyType,
    ReconciliationReport,
    ReconciliationResult,
    ReconciliationService,
    ReportGenerator,
    detect_discrepancies,
    plan_actions,
)
from .cards import MembershipCardService
from .webhooks import WebhookIdempotencyGuard, WebhookProcessor
from .admin import AdminMembershipService
