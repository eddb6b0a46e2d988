"""Reconciliation between billing provider state and stored memberships.

Features:
- Build provider and store snapshots for a member email
- Detect discrepancies between the two snapshots
- Plan and apply idempotent corrective writes with an audit trail
- Render reports as JSON or text
"""

from .models import (
    DiscrepancyType,
    ProviderSnapshot,
    StoreSnapshot,
    StoreMembershipView,
    StoreCardView,
    ReconciliationPlan,
    ReconciliationReport,
    ReconciliationResult,
)
from .detector import detect_discrepancies, unique_tags
from .planner import plan_actions
from .snapshots import build_provider_snapshot, build_store_snapshot
from .service import ReconciliationService
from .report import ReportGenerator, format_result

__all__ = [
    # Models
    "DiscrepancyType",
    "ProviderSnapshot",
    "StoreSnapshot",
    "StoreMembershipView",
    "StoreCardView",
    "ReconciliationPlan",
    "ReconciliationReport",
    "ReconciliationResult",
    # Core Components
    "detect_discrepancies",
    "unique_tags",
    "plan_actions",
    "build_provider_snapshot",
    "build_store_snapshot",
    "ReconciliationService",
    "ReportGenerator",
    "format_result",
]
