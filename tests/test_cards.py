"""Tests for membership cards: numbering, updates and verification."""

import json
import pytest
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from membership_sdk.cards import (
    CardContext,
    MembershipCardService,
    build_verification_payload,
    format_membership_number,
    parse_verification_payload,
)
from membership_sdk.database import CardRepository, MembershipRepository, UserRepository, utcnow
from membership_sdk.errors import CardError, NotFoundError


NOW = datetime(2025, 6, 1, 12, 0, 0)


async def _context(db_session, email="member@example.com", status="active", end_date=None, plan_type="individual"):
    user = await UserRepository(db_session).create(email=email, name="Pat Member")
    membership = await MembershipRepository(db_session).create(
        user_id=user.id,
        plan_type=plan_type,
        status=status,
        start_date=datetime(2025, 1, 1),
        end_date=end_date or datetime(2025, 12, 31),
    )
    return CardContext(user=user, membership=membership)


class TestMembershipNumbers:
    """Tests for membership number formatting."""

    def test_format(self):
        assert format_membership_number(2025, 42, prefix="MEM") == "MEM-2025-000042"

    def test_prefix_from_environment(self, monkeypatch):
        monkeypatch.setenv("MEMBERSHIP_NUMBER_PREFIX", "CLUB")
        assert format_membership_number(2025, 1) == "CLUB-2025-000001"


class TestVerificationPayload:
    """Tests for signed QR payloads."""

    def test_payload_is_compact_and_signed(self):
        data = build_verification_payload("MEM-2025-000001", "0123456789abcdef", datetime(2025, 12, 31))
        payload = json.loads(data)

        assert " " not in data
        assert payload["mn"] == "MEM-2025-000001"
        assert payload["u"] == "01234567"
        assert payload["v"] == "20251231"
        assert len(payload["s"]) == 8
        assert parse_verification_payload(data) == payload

    def test_tampered_payload_is_rejected(self):
        payload = json.loads(build_verification_payload("MEM-2025-000001", "0123456789", datetime(2025, 12, 31)))
        payload["v"] = "20301231"

        assert parse_verification_payload(json.dumps(payload)) is None

    @pytest.mark.parametrize("data", ["not json", "{}", '{"mn": 1, "u": 2, "v": 3, "s": 4}', "[]"])
    def test_malformed_payload(self, data):
        assert parse_verification_payload(data) is None


class TestCardLifecycle:
    """Tests for MembershipCardService create/update."""

    async def test_create_card_projects_membership(self, db_session):
        ctx = await _context(db_session)
        card = await MembershipCardService(db_session).create_card(ctx)

        assert card.membership_number.startswith(f"MEM-{utcnow().year}-")
        assert card.membership_id == ctx.membership.id
        assert card.member_name == "Pat Member"
        assert card.status == "active"
        assert card.valid_until == datetime(2025, 12, 31)
        assert json.loads(card.verification_data)["mn"] == card.membership_number

    async def test_numbers_are_unique_across_users(self, db_session):
        service = MembershipCardService(db_session)
        numbers = []
        for i in range(5):
            ctx = await _context(db_session, email=f"member{i}@example.com")
            numbers.append((await service.create_card(ctx)).membership_number)

        assert len(set(numbers)) == 5
        assert numbers == sorted(numbers)

    async def test_update_preserves_number(self, db_session):
        ctx = await _context(db_session)
        service = MembershipCardService(db_session)
        card = await service.create_card(ctx)
        number = card.membership_number

        await MembershipRepository(db_session).update(
            ctx.membership, status="canceled", plan_type="family", end_date=datetime(2026, 3, 31)
        )
        updated = await service.update_card(ctx)

        assert updated.id == card.id
        assert updated.membership_number == number
        assert updated.status == "canceled"
        assert updated.plan_type == "family"
        assert updated.valid_until == datetime(2026, 3, 31)

    async def test_create_twice_keeps_single_card(self, db_session):
        ctx = await _context(db_session)
        service = MembershipCardService(db_session)

        first = await service.create_card(ctx)
        second = await service.create_card(ctx)

        assert second.id == first.id
        assert second.membership_number == first.membership_number

    async def test_update_without_card_raises(self, db_session):
        ctx = await _context(db_session)

        with pytest.raises(NotFoundError):
            await MembershipCardService(db_session).update_card(ctx)

    async def test_write_failure_raises_card_error(self, db_session, monkeypatch):
        ctx = await _context(db_session)

        async def failing_create(self, **kwargs):
            raise OperationalError("INSERT INTO membership_cards", {}, Exception("disk I/O error"))

        monkeypatch.setattr(CardRepository, "create", failing_create)

        with pytest.raises(CardError) as exc_info:
            await MembershipCardService(db_session).create_card(ctx)

        assert exc_info.value.kind == "card"
        assert isinstance(exc_info.value.__cause__, OperationalError)

    async def test_sync_card(self, db_session):
        ctx = await _context(db_session)
        service = MembershipCardService(db_session)

        card, created = await service.sync_card(ctx)
        assert created is True

        again, created = await service.sync_card(ctx)
        assert created is False
        assert again.membership_number == card.membership_number


class TestVerifyMembership:
    """Tests for read-only verification."""

    async def _card(self, db_session, **kwargs):
        ctx = await _context(db_session, **kwargs)
        return await MembershipCardService(db_session).create_card(ctx)

    async def test_valid_membership(self, db_session):
        card = await self._card(db_session)

        result = await MembershipCardService(db_session).verify_membership(card.membership_number, now=NOW)

        assert result.valid is True
        assert result.message == "Valid membership"
        assert result.member_name == "Pat Member"
        assert result.days_remaining > 30

    async def test_expiring_soon(self, db_session):
        card = await self._card(db_session, end_date=NOW + timedelta(days=10))

        result = await MembershipCardService(db_session).verify_membership(card.membership_number, now=NOW)

        assert result.valid is True
        assert result.days_remaining == 10
        assert result.message == "Valid - expires in 10 days"

    async def test_expired(self, db_session):
        card = await self._card(db_session, end_date=NOW - timedelta(days=1))

        result = await MembershipCardService(db_session).verify_membership(card.membership_number, now=NOW)

        assert result.valid is False
        assert result.days_remaining == 0
        assert result.message == "Membership has expired"

    async def test_inactive_status(self, db_session):
        card = await self._card(db_session, status="canceled")

        result = await MembershipCardService(db_session).verify_membership(card.membership_number, now=NOW)

        assert result.valid is False
        assert result.message == "Membership is canceled"

    async def test_lookup_is_case_insensitive(self, db_session):
        card = await self._card(db_session)

        result = await MembershipCardService(db_session).verify_membership(card.membership_number.lower(), now=NOW)
        assert result.membership_number == card.membership_number

    async def test_unknown_number(self, db_session):
        with pytest.raises(NotFoundError):
            await MembershipCardService(db_session).verify_membership("MEM-2025-999999")

    async def test_verify_payload(self, db_session):
        card = await self._card(db_session)
        service = MembershipCardService(db_session)

        result = await service.verify_payload(card.verification_data, now=NOW)
        assert result.valid is True
        assert result.membership_number == card.membership_number

        bad = await service.verify_payload("garbage", now=NOW)
        assert bad.valid is False
        assert bad.message == "Invalid verification code"

    async def test_verify_payload_for_unknown_card(self, db_session):
        data = build_verification_payload("MEM-2025-777777", "deadbeef-0000", datetime(2025, 12, 31))

        result = await MembershipCardService(db_session).verify_payload(data, now=NOW)

        assert result.valid is False
        assert result.message == "Membership not found"
