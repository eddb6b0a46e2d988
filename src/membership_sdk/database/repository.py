"""Repository layer for membership persistence operations."""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select, update, delete, func, or_, and_, exists
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from .models import (
    User,
    Membership,
    MembershipCard,
    MembershipCounter,
    WebhookEvent,
    AuditLogEntry,
    AuditAction,
    MembershipStatus,
    WebhookStatus,
    NON_TERMINAL_STATUSES,
    utcnow,
)

logger = logging.getLogger(__name__)

# Profile fields an admin may edit
USER_MUTABLE_FIELDS = ("email", "name", "phone", "stripe_customer_id")

# Fields of a membership that reconciliation and admin writes may change
MEMBERSHIP_MUTABLE_FIELDS = ("plan_type", "status", "start_date", "end_date", "auto_renew")

# Fields of a card that may be rewritten in place; membership_number is never one of them
CARD_MUTABLE_FIELDS = (
    "membership_id",
    "member_name",
    "email",
    "plan_type",
    "status",
    "valid_from",
    "valid_until",
    "verification_data",
    "document_url",
)


def _dialect_insert(session: AsyncSession, table):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


LIKE_ESCAPE = "\\"


def _contains_pattern(text: str) -> str:
    """LIKE pattern matching text literally anywhere in a value."""
    for char in (LIKE_ESCAPE, "%", "_"):
        text = text.replace(char, LIKE_ESCAPE + char)
    return f"%{text}%"


def _check_window(start_date: datetime, end_date: datetime) -> None:
    if end_date < start_date:
        raise ValidationError("end_date", "End date must be on or after start date")


class UserRepository:
    """Repository for User operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
    ) -> User:
        """Create a new user. Emails are stored lower-cased.

        Args:
            email: Member email address.
            name: Optional display name.
            phone: Optional phone number.
            stripe_customer_id: Optional billing customer id to link.

        Returns:
            Created User instance.
        """
        user = User(
            email=email.strip().lower(),
            name=name,
            phone=phone,
            stripe_customer_id=stripe_customer_id,
        )
        self.session.add(user)
        await self.session.flush()

        logger.info(f"Created user {user.id} for {user.email}")
        return user

    async def get_by_id(self, user_id: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive lookup by email."""
        result = await self.session.execute(
            select(User).where(User.email == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        result = await self.session.execute(
            select(User).where(User.stripe_customer_id == customer_id)
        )
        return result.scalars().first()

    async def link_customer(self, user: User, customer_id: str) -> User:
        """Attach a billing customer id to an existing user."""
        user.stripe_customer_id = customer_id
        user.updated_at = utcnow()
        await self.session.flush()
        logger.info(f"Linked user {user.id} to billing customer {customer_id}")
        return user

    async def update(self, user: User, **fields: Any) -> User:
        """Update profile fields in place. A new email is stored lower-cased.

        Raises:
            ValueError: If a field outside the mutable set is given.
        """
        unknown = set(fields) - set(USER_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Immutable user fields: {sorted(unknown)}")

        if fields.get("email"):
            fields["email"] = fields["email"].strip().lower()
        for name, value in fields.items():
            setattr(user, name, value)
        user.updated_at = utcnow()

        await self.session.flush()
        logger.info(f"Updated user {user.id}: {sorted(fields)}")
        return user

    async def list_all(self) -> List[User]:
        result = await self.session.execute(select(User).order_by(User.created_at.asc(), User.id))
        return list(result.scalars().all())

    async def search(
        self,
        query: Optional[str] = None,
        status: Optional[str] = None,
        plan_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[User], int]:
        """Search users by email, name or membership number.

        Args:
            query: Case-insensitive substring to match.
            status: Only users holding a membership with this status.
            plan_type: Only users holding a membership with this plan type.
            offset: Number of rows to skip.
            limit: Maximum number of rows to return.

        Returns:
            Tuple of (matching users ordered by creation date, total count).
        """
        conditions = []
        if query:
            pattern = _contains_pattern(query.strip())
            conditions.append(
                or_(
                    User.email.ilike(pattern, escape=LIKE_ESCAPE),
                    User.name.ilike(pattern, escape=LIKE_ESCAPE),
                    exists().where(
                        and_(
                            MembershipCard.user_id == User.id,
                            MembershipCard.membership_number.ilike(pattern, escape=LIKE_ESCAPE),
                        )
                    ),
                )
            )
        if status:
            conditions.append(
                exists().where(and_(Membership.user_id == User.id, Membership.status == status))
            )
        if plan_type:
            conditions.append(
                exists().where(and_(Membership.user_id == User.id, Membership.plan_type == plan_type))
            )

        count_query = select(func.count()).select_from(User)
        data_query = select(User)
        if conditions:
            count_query = count_query.where(and_(*conditions))
            data_query = data_query.where(and_(*conditions))

        total = (await self.session.execute(count_query)).scalar_one()
        result = await self.session.execute(
            data_query.order_by(User.created_at.desc(), User.id).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total


class MembershipRepository:
    """Repository for Membership operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: str,
        plan_type: str,
        status: str,
        start_date: datetime,
        end_date: datetime,
        auto_renew: bool = False,
        stripe_subscription_id: Optional[str] = None,
    ) -> Membership:
        """Create a membership row.

        Raises:
            ValidationError: If the end date precedes the start date.
        """
        _check_window(start_date, end_date)
        membership = Membership(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            plan_type=plan_type,
            status=status,
            start_date=start_date,
            end_date=end_date,
            auto_renew=auto_renew,
        )
        self.session.add(membership)
        await self.session.flush()

        logger.info(f"Created membership {membership.id} for user {user_id} with status {status}")
        return membership

    async def get_by_id(self, membership_id: str) -> Optional[Membership]:
        result = await self.session.execute(
            select(Membership).where(Membership.id == membership_id)
        )
        return result.scalar_one_or_none()

    async def get_by_subscription(self, user_id: str, subscription_id: str) -> Optional[Membership]:
        result = await self.session.execute(
            select(Membership).where(
                and_(
                    Membership.user_id == user_id,
                    Membership.stripe_subscription_id == subscription_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_active(self, user_id: str) -> Optional[Membership]:
        """Most recent membership by end date among non-terminal statuses."""
        result = await self.session.execute(
            select(Membership)
            .where(
                and_(
                    Membership.user_id == user_id,
                    Membership.status.in_(NON_TERMINAL_STATUSES),
                )
            )
            .order_by(Membership.end_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest(self, user_id: str) -> Optional[Membership]:
        """Most recent membership by end date regardless of status."""
        result = await self.session.execute(
            select(Membership)
            .where(Membership.user_id == user_id)
            .order_by(Membership.end_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> List[Membership]:
        result = await self.session.execute(
            select(Membership)
            .where(Membership.user_id == user_id)
            .order_by(Membership.end_date.desc())
        )
        return list(result.scalars().all())

    async def update(self, membership: Membership, **fields: Any) -> Membership:
        """Update mutable membership fields in place.

        Args:
            membership: Membership instance to update.
            **fields: Subset of plan_type, status, start_date, end_date, auto_renew.

        Returns:
            Updated Membership instance.

        Raises:
            ValueError: If a field outside the mutable set is given.
            ValidationError: If the resulting window is inverted.
        """
        unknown = set(fields) - set(MEMBERSHIP_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Immutable membership fields: {sorted(unknown)}")

        _check_window(
            fields.get("start_date", membership.start_date),
            fields.get("end_date", membership.end_date),
        )
        for name, value in fields.items():
            setattr(membership, name, value)
        membership.updated_at = utcnow()

        await self.session.flush()
        logger.info(f"Updated membership {membership.id}: {sorted(fields)}")
        return membership

    async def upsert_for_subscription(
        self,
        user_id: str,
        subscription_id: str,
        plan_type: str,
        status: str,
        start_date: datetime,
        end_date: datetime,
        auto_renew: bool,
    ) -> Tuple[Membership, bool]:
        """Insert or update the membership keyed by (user, subscription).

        Returns:
            Tuple of (membership, created flag).
        """
        existing = await self.get_by_subscription(user_id, subscription_id)
        if existing is None:
            membership = await self.create(
                user_id=user_id,
                plan_type=plan_type,
                status=status,
                start_date=start_date,
                end_date=end_date,
                auto_renew=auto_renew,
                stripe_subscription_id=subscription_id,
            )
            return membership, True

        membership = await self.update(
            existing,
            plan_type=plan_type,
            status=status,
            start_date=start_date,
            end_date=end_date,
            auto_renew=auto_renew,
        )
        return membership, False

    async def soft_delete_for_user(self, user_id: str) -> List[Membership]:
        """Mark every non-deleted membership of a user as deleted."""
        memberships = await self.list_for_user(user_id)
        changed = []
        now = utcnow()
        for membership in memberships:
            if membership.status != MembershipStatus.DELETED.value:
                membership.status = MembershipStatus.DELETED.value
                membership.updated_at = now
                changed.append(membership)
        await self.session.flush()
        logger.info(f"Soft-deleted {len(changed)} memberships for user {user_id}")
        return changed

    async def list_expiring(self, within_days: int, now: Optional[datetime] = None) -> List[Membership]:
        """Active or past-due memberships ending within the given number of days."""
        now = now or utcnow()
        result = await self.session.execute(
            select(Membership)
            .where(
                and_(
                    Membership.status.in_(
                        (MembershipStatus.ACTIVE.value, MembershipStatus.PAST_DUE.value)
                    ),
                    Membership.end_date >= now,
                    Membership.end_date <= now + timedelta(days=within_days),
                )
            )
            .order_by(Membership.end_date.asc())
        )
        return list(result.scalars().all())


class CardRepository:
    """Repository for MembershipCard operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        user_id: str,
        membership_id: str,
        membership_number: str,
        email: str,
        plan_type: str,
        status: str,
        valid_from: datetime,
        valid_until: datetime,
        verification_data: str,
        member_name: Optional[str] = None,
        document_url: Optional[str] = None,
    ) -> MembershipCard:
        card = MembershipCard(
            user_id=user_id,
            membership_id=membership_id,
            membership_number=membership_number,
            member_name=member_name,
            email=email,
            plan_type=plan_type,
            status=status,
            valid_from=valid_from,
            valid_until=valid_until,
            verification_data=verification_data,
            document_url=document_url,
        )
        self.session.add(card)
        await self.session.flush()

        logger.info(f"Created card {membership_number} for user {user_id}")
        return card

    async def get_by_user(self, user_id: str) -> Optional[MembershipCard]:
        result = await self.session.execute(
            select(MembershipCard).where(MembershipCard.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_number(self, membership_number: str) -> Optional[MembershipCard]:
        result = await self.session.execute(
            select(MembershipCard).where(MembershipCard.membership_number == membership_number)
        )
        return result.scalar_one_or_none()

    async def update(self, card: MembershipCard, **fields: Any) -> MembershipCard:
        """Rewrite card fields in place.

        Raises:
            ValueError: If the membership number or another immutable field is given.
        """
        unknown = set(fields) - set(CARD_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Immutable card fields: {sorted(unknown)}")

        for name, value in fields.items():
            setattr(card, name, value)
        card.updated_at = utcnow()

        await self.session.flush()
        logger.info(f"Updated card {card.membership_number}")
        return card


class CounterRepository:
    """Repository for the per-year membership number counter."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def next_number(self, year: int) -> int:
        """Atomically increment and return the counter for a year.

        A single INSERT ... ON CONFLICT DO UPDATE ... RETURNING statement is
        used so concurrent callers can never observe the same value.
        """
        table = MembershipCounter.__table__
        now = utcnow()
        stmt = _dialect_insert(self.session, table).values(year=year, last_number=1, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.year],
            set_={"last_number": table.c.last_number + 1, "updated_at": now},
        ).returning(table.c.last_number)

        result = await self.session.execute(stmt)
        number = result.scalar_one()
        logger.debug(f"Allocated membership counter {year}/{number}")
        return number


class WebhookEventRepository:
    """Repository for the webhook event ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_if_absent(self, event_id: str, event_type: str) -> bool:
        """Conditionally insert a processing entry.

        Returns:
            True if the row was inserted, False if the event id already exists.
        """
        table = WebhookEvent.__table__
        stmt = _dialect_insert(self.session, table).values(
            id=event_id,
            event_type=event_type,
            status=WebhookStatus.PROCESSING.value,
            retry_count=0,
            processed_at=utcnow(),
        ).on_conflict_do_nothing(index_elements=[table.c.id])

        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def readmit_failed(self, event_id: str) -> bool:
        """Move a failed entry back to processing, bumping its retry count."""
        stmt = (
            update(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.id == event_id,
                    WebhookEvent.status == WebhookStatus.FAILED.value,
                )
            )
            .values(
                status=WebhookStatus.PROCESSING.value,
                retry_count=WebhookEvent.retry_count + 1,
                processed_at=utcnow(),
                error_message=None,
                failed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def reclaim_stale(self, event_id: str, stale_before: datetime) -> bool:
        """Take over a processing entry whose claim is older than the cutoff."""
        stmt = (
            update(WebhookEvent)
            .where(
                and_(
                    WebhookEvent.id == event_id,
                    WebhookEvent.status == WebhookStatus.PROCESSING.value,
                    WebhookEvent.processed_at < stale_before,
                )
            )
            .values(
                retry_count=WebhookEvent.retry_count + 1,
                processed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get(self, event_id: str) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_completed(self, event_id: str) -> None:
        await self.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(status=WebhookStatus.COMPLETED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, event_id: str, error_message: str) -> None:
        await self.session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .values(
                status=WebhookStatus.FAILED.value,
                error_message=error_message[:2000],
                failed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete ledger entries first processed before the cutoff."""
        result = await self.session.execute(
            delete(WebhookEvent)
            .where(WebhookEvent.processed_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class AuditLogRepository:
    """Append-only repository for the audit log. There is no update or delete."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        action: AuditAction,
        performed_by: str,
        user_id: Optional[str] = None,
        performed_by_email: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """Append an audit entry.

        Args:
            action: Audit action tag.
            performed_by: Actor id (admin uid, "webhook", "system", ...).
            user_id: Subject user id, if the action is user-scoped.
            performed_by_email: Actor email, if known.
            details: Structured details such as previous values and reason.

        Returns:
            Created AuditLogEntry instance.
        """
        entry = AuditLogEntry(
            user_id=user_id,
            action=action.value if isinstance(action, AuditAction) else action,
            performed_by=performed_by,
            performed_by_email=performed_by_email,
        )
        entry.details = details
        self.session.add(entry)
        await self.session.flush()

        logger.info(f"Audit {entry.action} by {performed_by} for user {user_id}")
        return entry

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[AuditLogEntry]:
        result = await self.session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.user_id == user_id)
            .order_by(AuditLogEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_action(self, action: AuditAction, limit: int = 100) -> List[AuditLogEntry]:
        result = await self.session.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.action == action.value)
            .order_by(AuditLogEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count(self, action: Optional[AuditAction] = None) -> int:
        query = select(func.count()).select_from(AuditLogEntry)
        if action is not None:
            query = query.where(AuditLogEntry.action == action.value)
        return (await self.session.execute(query)).scalar_one()
