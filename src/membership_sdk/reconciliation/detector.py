"""Discrepancy detection between billing provider and stored membership state."""

from datetime import datetime, timedelta
from typing import List, Optional

from ..database.models import MembershipStatus
from .models import DiscrepancyType, ProviderSnapshot, StoreSnapshot

# Dates closer than this are considered equal
DATE_TOLERANCE = timedelta(days=1)

DELETED_STATUS = MembershipStatus.DELETED.value


def dates_differ(a: datetime, b: datetime, tolerance: timedelta = DATE_TOLERANCE) -> bool:
    return abs(a - b) > tolerance


def detect_discrepancies(
    provider: Optional[ProviderSnapshot],
    store: Optional[StoreSnapshot],
) -> List[DiscrepancyType]:
    """Compare the two snapshots and return discrepancy tags in rule order.

    The result is never empty: either at least one discrepancy or
    ``NO_DISCREPANCY``. A card that disagrees with its membership on both
    status and plan type yields ``CARD_STATUS_MISMATCH`` twice; callers that
    display tags may de-duplicate with :func:`unique_tags`.
    """
    if provider is None:
        return [DiscrepancyType.NO_PROVIDER_CUSTOMER]

    if store is None:
        return [
            DiscrepancyType.MISSING_USER,
            DiscrepancyType.MISSING_MEMBERSHIP,
            DiscrepancyType.MISSING_CARD,
        ]

    membership = store.membership
    if membership is not None and membership.status == DELETED_STATUS:
        # soft-deleted memberships are frozen
        return [DiscrepancyType.NO_DISCREPANCY]

    tags: List[DiscrepancyType] = []

    if membership is None:
        tags.append(DiscrepancyType.MISSING_MEMBERSHIP)
    else:
        if provider.status != membership.status:
            tags.append(DiscrepancyType.STATUS_MISMATCH)
        if provider.plan_type != membership.plan_type:
            tags.append(DiscrepancyType.PLAN_MISMATCH)
        if dates_differ(provider.current_period_end, membership.end_date):
            tags.append(DiscrepancyType.DATE_MISMATCH)

    card = store.card
    if card is None:
        tags.append(DiscrepancyType.MISSING_CARD)
    elif membership is not None:
        if card.status != membership.status:
            tags.append(DiscrepancyType.CARD_STATUS_MISMATCH)
        if card.plan_type != membership.plan_type:
            tags.append(DiscrepancyType.CARD_STATUS_MISMATCH)
        if dates_differ(card.valid_until, membership.end_date):
            tags.append(DiscrepancyType.CARD_DATES_MISMATCH)

    if not tags:
        tags.append(DiscrepancyType.NO_DISCREPANCY)
    return tags


def unique_tags(tags: List[DiscrepancyType]) -> List[DiscrepancyType]:
    """De-duplicate tags keeping first-seen order."""
    seen = set()
    result = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result
