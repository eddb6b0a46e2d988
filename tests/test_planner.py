"""Tests for reconciliation planning."""

from datetime import timedelta

from membership_sdk.reconciliation import DiscrepancyType, detect_discrepancies, plan_actions

from builders import END, card_view, membership_view, provider_snapshot, store_snapshot


class TestPlanActions:
    """Tests for plan_actions."""

    def test_no_provider_cannot_reconcile(self):
        plan = plan_actions([DiscrepancyType.NO_PROVIDER_CUSTOMER], None, None)
        assert plan.can_reconcile is False
        assert plan.actions == ["No action possible - no billing subscription found"]

    def test_in_sync_has_no_actions(self):
        store = store_snapshot(membership_view(), card_view())
        plan = plan_actions([DiscrepancyType.NO_DISCREPANCY], provider_snapshot(), store)
        assert plan.can_reconcile is False
        assert plan.actions == []

    def test_missing_everything(self):
        provider = provider_snapshot()
        plan = plan_actions(detect_discrepancies(provider, None), provider, None)
        assert plan.can_reconcile is True
        assert plan.actions == [
            "Create user linked to billing customer cus_123",
            "Create membership with status: active",
            "Generate new membership card",
        ]

    def test_status_mismatch_action_text(self):
        provider = provider_snapshot(status="canceled")
        store = store_snapshot(membership_view(status="active"), card_view())
        plan = plan_actions(detect_discrepancies(provider, store), provider, store)
        assert plan.can_reconcile is True
        assert plan.actions == ["Update membership status: active → canceled"]

    def test_plan_and_date_actions(self):
        provider = provider_snapshot(plan_type="family")
        store = store_snapshot(membership_view(end_date=END - timedelta(days=5)), card_view(valid_until=END - timedelta(days=5)))
        plan = plan_actions(detect_discrepancies(provider, store), provider, store)
        assert plan.actions == [
            "Update membership plan type: individual → family",
            "Update membership end date to: 2025-12-31",
        ]

    def test_card_tags_share_one_action(self):
        provider = provider_snapshot()
        store = store_snapshot(
            membership_view(),
            card_view(status="canceled", plan_type="family", valid_until=END - timedelta(days=9)),
        )
        tags = detect_discrepancies(provider, store)
        plan = plan_actions(tags, provider, store)
        assert plan.actions == ["Update card to match membership (preserve membership number)"]

    def test_plan_is_reproducible(self):
        provider = provider_snapshot(status="past_due", plan_type="family")
        store = store_snapshot(membership_view(), None)
        tags = detect_discrepancies(provider, store)
        assert plan_actions(tags, provider, store) == plan_actions(tags, provider, store)
