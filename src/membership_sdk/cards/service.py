"""Membership card lifecycle: numbering, in-place updates and verification."""

import math
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import User, Membership, MembershipCard, MembershipStatus, utcnow
from ..database.repository import CardRepository, CounterRepository
from ..errors import CardError, NotFoundError
from .verification import (
    build_verification_payload,
    format_membership_number,
    parse_verification_payload,
)

logger = logging.getLogger(__name__)

# Card statuses that grant entry
VALID_CARD_STATUSES = (
    MembershipStatus.ACTIVE.value,
    MembershipStatus.TRIALING.value,
    MembershipStatus.COMPLIMENTARY.value,
    MembershipStatus.LEGACY.value,
)

EXPIRY_WARNING_DAYS = 30


@dataclass
class CardContext:
    """The canonical user and membership a card is projected from."""
    user: User
    membership: Membership

    @property
    def user_id(self) -> str:
        return self.user.id


class VerificationResult(BaseModel):
    valid: bool
    membership_number: Optional[str] = None
    status: Optional[str] = None
    plan_type: Optional[str] = None
    member_name: Optional[str] = None
    valid_until: Optional[datetime] = None
    days_remaining: int = 0
    message: str


class MembershipCardService:
    """Creates, updates and verifies membership cards.

    The service flushes but does not commit; callers own the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.cards = CardRepository(session)
        self.counters = CounterRepository(session)

    def _card_fields(self, ctx: CardContext, membership_number: str) -> dict:
        membership = ctx.membership
        return {
            "membership_id": membership.id,
            "member_name": ctx.user.name,
            "email": ctx.user.email,
            "plan_type": membership.plan_type,
            "status": membership.status,
            "valid_from": membership.start_date,
            "valid_until": membership.end_date,
            "verification_data": build_verification_payload(
                membership_number, ctx.user.id, membership.end_date
            ),
        }

    async def allocate_number(self, year: Optional[int] = None) -> str:
        year = year or utcnow().year
        sequence = await self.counters.next_number(year)
        return format_membership_number(year, sequence)

    async def create_card(self, ctx: CardContext) -> MembershipCard:
        """Create the user's card with a freshly allocated membership number.

        If the user already holds a card it is updated in place instead, so a
        second number is never issued.

        Raises:
            CardError: If the card cannot be written.
        """
        existing = await self.cards.get_by_user(ctx.user_id)
        if existing is not None:
            logger.info(f"User {ctx.user_id} already has card {existing.membership_number}; updating")
            return await self._update(existing, ctx)

        try:
            number = await self.allocate_number()
            card = await self.cards.create(
                user_id=ctx.user_id,
                membership_number=number,
                **self._card_fields(ctx, number),
            )
        except SQLAlchemyError as e:
            logger.error(f"Card issue for user {ctx.user_id} failed: {e}")
            raise CardError(f"Failed to issue membership card for user {ctx.user_id}") from e
        logger.info(f"Issued membership card {number} to user {ctx.user_id}")
        return card

    async def update_card(self, ctx: CardContext) -> MembershipCard:
        """Rewrite the user's card from the membership, keeping its number.

        Raises:
            NotFoundError: If the user has no card.
        """
        card = await self.cards.get_by_user(ctx.user_id)
        if card is None:
            raise NotFoundError("MembershipCard", ctx.user_id)
        return await self._update(card, ctx)

    async def _update(self, card: MembershipCard, ctx: CardContext) -> MembershipCard:
        try:
            return await self.cards.update(card, **self._card_fields(ctx, card.membership_number))
        except SQLAlchemyError as e:
            logger.error(f"Card update for {card.membership_number} failed: {e}")
            raise CardError(f"Failed to update membership card {card.membership_number}") from e

    async def sync_card(self, ctx: CardContext) -> Tuple[MembershipCard, bool]:
        """Create the card if absent, else update it. Returns (card, created)."""
        card = await self.cards.get_by_user(ctx.user_id)
        if card is None:
            return await self.create_card(ctx), True
        return await self._update(card, ctx), False

    async def get_card(self, user_id: str) -> Optional[MembershipCard]:
        return await self.cards.get_by_user(user_id)

    async def mark_deleted(self, user_id: str) -> Optional[MembershipCard]:
        card = await self.cards.get_by_user(user_id)
        if card is None:
            return None
        return await self.cards.update(card, status=MembershipStatus.DELETED.value)

    async def verify_membership(self, membership_number: str, now: Optional[datetime] = None) -> VerificationResult:
        """Read-only lookup of a membership number.

        Raises:
            NotFoundError: If no card carries the number.
        """
        card = await self.cards.get_by_number(membership_number.strip().upper())
        if card is None:
            raise NotFoundError("MembershipCard", membership_number)
        return self._verification_for(card, now or utcnow())

    async def verify_payload(self, data: str, now: Optional[datetime] = None) -> VerificationResult:
        """Verify a scanned QR payload; never raises for bad input."""
        payload = parse_verification_payload(data)
        if payload is None:
            return VerificationResult(valid=False, message="Invalid verification code")

        card = await self.cards.get_by_number(payload["mn"])
        if card is None or not card.user_id.startswith(payload["u"]):
            return VerificationResult(
                valid=False,
                membership_number=payload["mn"],
                message="Membership not found",
            )
        return self._verification_for(card, now or utcnow())

    def _verification_for(self, card: MembershipCard, now: datetime) -> VerificationResult:
        expired = card.valid_until <= now
        days_remaining = 0 if expired else math.ceil((card.valid_until - now).total_seconds() / 86400)
        valid = card.status in VALID_CARD_STATUSES and not expired

        if card.status not in VALID_CARD_STATUSES:
            message = f"Membership is {card.status}"
        elif expired:
            message = "Membership has expired"
        elif days_remaining <= EXPIRY_WARNING_DAYS:
            message = f"Valid - expires in {days_remaining} days"
        else:
            message = "Valid membership"

        return VerificationResult(
            valid=valid,
            membership_number=card.membership_number,
            status=card.status,
            plan_type=card.plan_type,
            member_name=card.member_name,
            valid_until=card.valid_until,
            days_remaining=days_remaining,
            message=message,
        )
