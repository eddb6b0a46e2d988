"""Snapshot builders shared by the detector and planner tests."""

from datetime import datetime

from membership_sdk.reconciliation import (
    ProviderSnapshot,
    StoreSnapshot,
    StoreMembershipView,
    StoreCardView,
)

END = datetime(2025, 12, 31, 0, 0, 0)
START = datetime(2025, 1, 1, 0, 0, 0)


def provider_snapshot(status="active", plan_type="individual", period_end=END):
    return ProviderSnapshot(
        customer_id="cus_123",
        email="member@example.com",
        subscription_id="sub_123",
        status=status,
        plan_type=plan_type,
        current_period_start=START,
        current_period_end=period_end,
    )


def membership_view(status="active", plan_type="individual", end_date=END):
    return StoreMembershipView(
        id="m_1",
        stripe_subscription_id="sub_123",
        status=status,
        plan_type=plan_type,
        start_date=START,
        end_date=end_date,
    )


def card_view(status="active", plan_type="individual", valid_until=END):
    return StoreCardView(
        id="c_1",
        membership_number="MEM-2025-000001",
        status=status,
        plan_type=plan_type,
        valid_from=START,
        valid_until=valid_until,
    )


def store_snapshot(membership=None, card=None):
    return StoreSnapshot(
        user_id="u_1",
        email="member@example.com",
        membership=membership,
        card=card,
    )
