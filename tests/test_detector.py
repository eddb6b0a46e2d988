"""Tests for discrepancy detection."""

import itertools
import pytest
from datetime import timedelta

from membership_sdk.reconciliation import DiscrepancyType, detect_discrepancies, unique_tags

from builders import END, card_view, membership_view, provider_snapshot, store_snapshot


class TestDetectorRules:
    """Tests for each detection rule."""

    def test_no_provider_short_circuits(self):
        store = store_snapshot(membership_view(status="canceled"), None)
        assert detect_discrepancies(None, store) == [DiscrepancyType.NO_PROVIDER_CUSTOMER]

    def test_missing_store_reports_everything_missing(self):
        assert detect_discrepancies(provider_snapshot(), None) == [
            DiscrepancyType.MISSING_USER,
            DiscrepancyType.MISSING_MEMBERSHIP,
            DiscrepancyType.MISSING_CARD,
        ]

    def test_in_sync(self):
        store = store_snapshot(membership_view(), card_view())
        assert detect_discrepancies(provider_snapshot(), store) == [DiscrepancyType.NO_DISCREPANCY]

    def test_user_without_membership_or_card(self):
        assert detect_discrepancies(provider_snapshot(), store_snapshot()) == [
            DiscrepancyType.MISSING_MEMBERSHIP,
            DiscrepancyType.MISSING_CARD,
        ]

    def test_card_without_membership_is_not_compared(self):
        store = store_snapshot(None, card_view(status="canceled"))
        assert detect_discrepancies(provider_snapshot(), store) == [DiscrepancyType.MISSING_MEMBERSHIP]

    def test_status_mismatch(self):
        store = store_snapshot(membership_view(status="active"), card_view(status="active"))
        tags = detect_discrepancies(provider_snapshot(status="canceled"), store)
        assert tags == [DiscrepancyType.STATUS_MISMATCH]

    def test_plan_mismatch(self):
        store = store_snapshot(membership_view(), card_view())
        tags = detect_discrepancies(provider_snapshot(plan_type="family"), store)
        assert tags == [DiscrepancyType.PLAN_MISMATCH]

    def test_dates_within_one_day_are_equal(self):
        store = store_snapshot(membership_view(end_date=END + timedelta(hours=23)), card_view())
        assert detect_discrepancies(provider_snapshot(), store) == [DiscrepancyType.NO_DISCREPANCY]

    def test_date_mismatch_beyond_tolerance(self):
        shifted = END + timedelta(days=1, seconds=1)
        store = store_snapshot(membership_view(end_date=shifted), card_view(valid_until=shifted))
        assert detect_discrepancies(provider_snapshot(), store) == [DiscrepancyType.DATE_MISMATCH]

    def test_card_status_and_plan_reuse_one_tag(self):
        store = store_snapshot(membership_view(), card_view(status="past_due", plan_type="family"))
        tags = detect_discrepancies(provider_snapshot(), store)
        assert tags == [DiscrepancyType.CARD_STATUS_MISMATCH, DiscrepancyType.CARD_STATUS_MISMATCH]
        assert unique_tags(tags) == [DiscrepancyType.CARD_STATUS_MISMATCH]

    def test_card_dates_mismatch(self):
        store = store_snapshot(membership_view(), card_view(valid_until=END - timedelta(days=30)))
        assert detect_discrepancies(provider_snapshot(), store) == [DiscrepancyType.CARD_DATES_MISMATCH]

    def test_deleted_membership_is_frozen(self):
        store = store_snapshot(membership_view(status="deleted"), card_view(status="deleted"))
        tags = detect_discrepancies(provider_snapshot(status="canceled", plan_type="family"), store)
        assert tags == [DiscrepancyType.NO_DISCREPANCY]

    def test_rule_order(self):
        store = store_snapshot(
            membership_view(status="active", plan_type="individual", end_date=END - timedelta(days=10)),
            card_view(status="canceled", valid_until=END - timedelta(days=40)),
        )
        tags = detect_discrepancies(provider_snapshot(status="past_due", plan_type="family"), store)
        assert tags == [
            DiscrepancyType.STATUS_MISMATCH,
            DiscrepancyType.PLAN_MISMATCH,
            DiscrepancyType.DATE_MISMATCH,
            DiscrepancyType.CARD_STATUS_MISMATCH,
            DiscrepancyType.CARD_DATES_MISMATCH,
        ]


class TestDetectorTotality:
    """Every presence combination yields a non-empty, deterministic tag list."""

    @pytest.mark.parametrize(
        "has_provider,has_store,has_membership,has_card",
        list(itertools.product([True, False], repeat=4)),
    )
    def test_total_and_deterministic(self, has_provider, has_store, has_membership, has_card):
        provider = provider_snapshot(status="past_due") if has_provider else None
        store = None
        if has_store:
            store = store_snapshot(
                membership_view() if has_membership else None,
                card_view(plan_type="family") if has_card else None,
            )

        first = detect_discrepancies(provider, store)
        second = detect_discrepancies(provider, store)

        assert first
        assert first == second
        assert all(isinstance(tag, DiscrepancyType) for tag in first)
        if DiscrepancyType.NO_DISCREPANCY in first:
            assert first == [DiscrepancyType.NO_DISCREPANCY]
