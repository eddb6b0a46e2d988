"""Turns discrepancy tags into an ordered list of corrective actions."""

from typing import List, Optional

from .detector import unique_tags
from .models import (
    DiscrepancyType,
    ProviderSnapshot,
    ReconciliationPlan,
    StoreSnapshot,
)

NO_ACTION_POSSIBLE = "No action possible - no billing subscription found"
CARD_UPDATE_ACTION = "Update card to match membership (preserve membership number)"


def _action_for(
    tag: DiscrepancyType,
    provider: ProviderSnapshot,
    store: Optional[StoreSnapshot],
) -> Optional[str]:
    membership = store.membership if store else None

    if tag == DiscrepancyType.MISSING_USER:
        return f"Create user linked to billing customer {provider.customer_id}"
    if tag == DiscrepancyType.MISSING_MEMBERSHIP:
        return f"Create membership with status: {provider.status}"
    if tag == DiscrepancyType.STATUS_MISMATCH:
        old = membership.status if membership else "none"
        return f"Update membership status: {old} → {provider.status}"
    if tag == DiscrepancyType.PLAN_MISMATCH:
        old = membership.plan_type if membership else "none"
        return f"Update membership plan type: {old} → {provider.plan_type}"
    if tag == DiscrepancyType.DATE_MISMATCH:
        return f"Update membership end date to: {provider.current_period_end.date().isoformat()}"
    if tag == DiscrepancyType.MISSING_CARD:
        return "Generate new membership card"
    if tag in (DiscrepancyType.CARD_STATUS_MISMATCH, DiscrepancyType.CARD_DATES_MISMATCH):
        return CARD_UPDATE_ACTION
    return None


def plan_actions(
    tags: List[DiscrepancyType],
    provider: Optional[ProviderSnapshot],
    store: Optional[StoreSnapshot],
) -> ReconciliationPlan:
    """Build the reconciliation plan for a set of tags.

    Reconciliation is possible only with a provider snapshot and at least one
    real discrepancy. Actions follow tag order, one per distinguishing tag; the
    two card tags share a single action.
    """
    if provider is None or DiscrepancyType.NO_PROVIDER_CUSTOMER in tags:
        return ReconciliationPlan(actions=[NO_ACTION_POSSIBLE], can_reconcile=False)

    actions: List[str] = []
    for tag in unique_tags(tags):
        action = _action_for(tag, provider, store)
        if action is not None and action not in actions:
            actions.append(action)

    return ReconciliationPlan(actions=actions, can_reconcile=bool(actions))
