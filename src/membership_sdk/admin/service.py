"""Admin orchestration: authorization, member CRUD and reconciliation entry points."""

import csv
import io
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import AdminIdentity, Authorizer, SessionVerifier, build_authorizer, JWTSessionVerifier
from ..cards.service import CardContext, MembershipCardService, VerificationResult
from ..connectors.base import BillingGateway, Payment, Refund
from ..database.models import (
    AuditAction,
    AuditLogEntry,
    Membership,
    MembershipStatus,
    NON_TERMINAL_STATUSES,
    PlanType,
    User,
    to_naive_utc,
    utcnow,
)
from ..database.repository import AuditLogRepository, MembershipRepository, UserRepository
from ..errors import (
    AdminError,
    CardError,
    ConflictError,
    MembershipError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from ..reconciliation.models import ReconciliationReport, ReconciliationResult
from ..reconciliation.service import ReconciliationService
from ..webhooks.processor import WebhookOutcome, WebhookProcessor
from .importer import EMAIL_PATTERN, RowError, parse_csv, validate_row

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Provider subscription statuses that block deleting a member
BLOCKING_SUBSCRIPTION_STATUSES = (
    MembershipStatus.ACTIVE.value,
    MembershipStatus.TRIALING.value,
    MembershipStatus.PAST_DUE.value,
)

# Statuses an admin may give a manually created membership
MANUAL_STATUSES = (
    MembershipStatus.ACTIVE.value,
    MembershipStatus.COMPLIMENTARY.value,
    MembershipStatus.LEGACY.value,
)

EXPORT_FORMATS = ("csv", "json")


class MemberWithMembership(BaseModel):
    user: Dict[str, Any]
    active_membership: Optional[Dict[str, Any]] = None
    memberships: List[Dict[str, Any]] = Field(default_factory=list)
    card: Optional[Dict[str, Any]] = None


class MemberSearchResult(BaseModel):
    items: List[MemberWithMembership]
    total: int
    page: int
    page_size: int


class BulkImportResult(BaseModel):
    created: int = 0
    errors: List[RowError] = Field(default_factory=list)


class UpdateMemberResult(BaseModel):
    member: MemberWithMembership
    email_synced_to_provider: bool = False


class MembershipStats(BaseModel):
    total_members: int = 0
    active_members: int = 0
    expired_members: int = 0
    canceled_members: int = 0
    individual_plans: int = 0
    family_plans: int = 0
    updated_at: str


class MemberExport(BaseModel):
    content: str
    media_type: str
    filename: str
    count: int


def _require_reason(reason: Optional[str]) -> str:
    if not reason or not reason.strip():
        raise ValidationError("reason", "Reason is required")
    return reason.strip()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AdminMembershipService:
    """Entry point for every admin operation.

    Mutating operations take the AdminIdentity returned by ``verify_admin``
    and append exactly one audit entry. Reads are side-effect free.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: BillingGateway,
        verifier: Optional[SessionVerifier] = None,
        authorizer: Optional[Authorizer] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.verifier = verifier or JWTSessionVerifier()
        self.authorizer = authorizer or build_authorizer()
        self.users = UserRepository(session)
        self.memberships = MembershipRepository(session)
        self.audit = AuditLogRepository(session)
        self.cards = MembershipCardService(session)

    async def verify_admin(self, session_token: str) -> AdminIdentity:
        """Verify a session token and require admin rights.

        Raises:
            SessionError: If the token is invalid or expired.
            UnauthorizedError: If any admin check fails.
        """
        claims = self.verifier.verify(session_token)
        return self.authorizer.authorize(claims)

    async def _load_member(self, user: User) -> MemberWithMembership:
        memberships = await self.memberships.list_for_user(user.id)
        active = await self.memberships.get_active(user.id)
        card = await self.cards.get_card(user.id)
        return MemberWithMembership(
            user=user.to_dict(),
            active_membership=active.to_dict() if active else None,
            memberships=[m.to_dict() for m in memberships],
            card=card.to_dict() if card else None,
        )

    async def _get_user(self, user_id: str) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def _current_membership(self, user_id: str) -> Optional[Membership]:
        """The active membership, else the most recent one of any status."""
        return await self.memberships.get_active(user_id) or await self.memberships.get_latest(user_id)

    @asynccontextmanager
    async def _writing(self, operation: str):
        """Run a unit of admin writes; database failures surface as StorageError."""
        try:
            yield
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to {operation}: {e}")
            raise StorageError(f"Failed to {operation}") from e
        except MembershipError:
            await self.session.rollback()
            raise

    async def search_members(
        self,
        query: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        plan_type: Optional[str] = None,
    ) -> MemberSearchResult:
        """Search members by email, name or membership number with pagination."""
        if page < 1:
            raise ValidationError("page", "Page must be at least 1")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError("page_size", f"Page size must be between 1 and {MAX_PAGE_SIZE}")

        users, total = await self.users.search(
            query=query,
            status=status,
            plan_type=plan_type,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        items = [await self._load_member(user) for user in users]
        return MemberSearchResult(items=items, total=total, page=page, page_size=page_size)

    async def get_member(self, user_id: str) -> MemberWithMembership:
        return await self._load_member(await self._get_user(user_id))

    async def get_member_audit_log(self, user_id: str, limit: int = 100) -> List[AuditLogEntry]:
        await self._get_user(user_id)
        return await self.audit.list_for_user(user_id, limit=limit)

    async def get_expiring_members(self, within_days: int = 30) -> List[MemberWithMembership]:
        """Members whose active or past-due membership ends within the window."""
        if within_days < 0:
            raise ValidationError("within_days", "Days must be non-negative")
        result = []
        for membership in await self.memberships.list_expiring(within_days):
            user = await self.users.get_by_id(membership.user_id)
            card = await self.cards.get_card(user.id)
            result.append(MemberWithMembership(
                user=user.to_dict(),
                active_membership=membership.to_dict(),
                memberships=[membership.to_dict()],
                card=card.to_dict() if card else None,
            ))
        return result

    async def get_stats(self, now: Optional[datetime] = None) -> MembershipStats:
        """Membership counts over every member that has not been deleted.

        Each member is counted by their current membership: the active one if
        any, else the most recent. A live status whose end date has passed
        counts as expired.
        """
        now = now or utcnow()
        stats = MembershipStats(updated_at=now.isoformat())
        for user in await self.users.list_all():
            membership = await self._current_membership(user.id)
            if membership is None:
                stats.total_members += 1
                continue
            if membership.status == MembershipStatus.DELETED.value:
                continue

            stats.total_members += 1
            if membership.status == MembershipStatus.CANCELED.value:
                stats.canceled_members += 1
            elif membership.end_date < now:
                stats.expired_members += 1
            elif membership.status in NON_TERMINAL_STATUSES:
                stats.active_members += 1

            if membership.plan_type == PlanType.FAMILY.value:
                stats.family_plans += 1
            else:
                stats.individual_plans += 1
        return stats

    async def export_members(
        self,
        export_format: str = "csv",
        include_email: bool = True,
        include_phone: bool = False,
        status: Optional[str] = None,
    ) -> MemberExport:
        """Export one row per non-deleted member with a membership.

        Raises:
            ValidationError: For an unknown format.
        """
        if export_format not in EXPORT_FORMATS:
            raise ValidationError("format", f"Format must be one of: {', '.join(EXPORT_FORMATS)}")

        headers = ["Membership Number", "Name"]
        if include_email:
            headers.append("Email")
        if include_phone:
            headers.append("Phone")
        headers += ["Plan Type", "Status", "Start Date", "End Date", "Auto-Renew"]

        rows = []
        for user in await self.users.list_all():
            membership = await self._current_membership(user.id)
            if membership is None or membership.status == MembershipStatus.DELETED.value:
                continue
            if status and membership.status != status:
                continue
            card = await self.cards.get_card(user.id)

            values = [card.membership_number if card else "", user.name or ""]
            if include_email:
                values.append(user.email)
            if include_phone:
                values.append(user.phone or "")
            values += [
                membership.plan_type,
                membership.status,
                membership.start_date.date().isoformat(),
                membership.end_date.date().isoformat(),
                "Yes" if membership.auto_renew else "No",
            ]
            rows.append(values)

        stamp = utcnow().strftime("%Y-%m-%d")
        if export_format == "json":
            content = json.dumps([dict(zip(headers, values)) for values in rows], indent=2)
            return MemberExport(
                content=content,
                media_type="application/json",
                filename=f"members-{stamp}.json",
                count=len(rows),
            )

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(headers)
        writer.writerows(rows)
        return MemberExport(
            content=buffer.getvalue(),
            media_type="text/csv",
            filename=f"members-{stamp}.csv",
            count=len(rows),
        )

    async def get_payment_history(self, user_id: str, limit: int = 50) -> List[Payment]:
        """A member's invoice payments from the billing provider, newest first."""
        user = await self._get_user(user_id)
        if not user.stripe_customer_id:
            return []
        return await self.gateway.list_payments(user.stripe_customer_id, limit=limit)

    async def create_member(
        self,
        admin: AdminIdentity,
        email: str,
        plan_type: str,
        start_date: datetime,
        end_date: datetime,
        status: str = MembershipStatus.ACTIVE.value,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> MemberWithMembership:
        """Create a member with a manual membership and a card.

        Raises:
            ValidationError: For a malformed email, unknown plan or status, or inverted window.
            ConflictError: EMAIL_EXISTS if a user already has the email.
            StorageError: If the member cannot be saved.
        """
        email = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("email", "Invalid email format")
        if plan_type not in {p.value for p in PlanType}:
            raise ValidationError("plan_type", 'Plan type must be "individual" or "family"')
        if status not in MANUAL_STATUSES:
            raise ValidationError("status", f"Invalid status: {status}")
        if await self.users.get_by_email(email) is not None:
            raise ConflictError(f"A user with email {email} already exists", code="EMAIL_EXISTS")

        async with self._writing(f"create member {email}"):
            user = await self.users.create(
                email=email, name=name, phone=phone, stripe_customer_id=stripe_customer_id
            )
            membership = await self.memberships.create(
                user_id=user.id,
                plan_type=plan_type,
                status=status,
                start_date=to_naive_utc(start_date),
                end_date=to_naive_utc(end_date),
            )
            card = await self.cards.create_card(CardContext(user=user, membership=membership))

            await self.audit.append(
                AuditAction.MEMBER_CREATED,
                performed_by=admin.id,
                performed_by_email=admin.email,
                user_id=user.id,
                details={
                    "new_values": {
                        "email": email,
                        "name": name,
                        "plan_type": plan_type,
                        "status": status,
                        "start_date": _iso(membership.start_date),
                        "end_date": _iso(membership.end_date),
                        "membership_number": card.membership_number,
                    },
                    "notes": notes,
                },
            )
            await self.session.commit()
        logger.info(f"Admin {admin.id} created member {user.id} ({email})")
        return await self._load_member(user)

    async def update_member(
        self,
        admin: AdminIdentity,
        user_id: str,
        reason: Optional[str],
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> UpdateMemberResult:
        """Change a member's profile; the card and the billing customer follow.

        A changed email is pushed to the billing provider first when the user
        is linked to a customer, so a provider failure leaves nothing written.

        Raises:
            AdminError: NO_CHANGES when no field differs from the stored value.
            ValidationError: For a missing reason or malformed email.
            ConflictError: EMAIL_EXISTS if another user has the new email.
            ProviderError: If the provider rejects the email change.
            StorageError: If the change cannot be saved.
        """
        reason = _require_reason(reason)
        user = await self._get_user(user_id)

        changes: Dict[str, Any] = {}
        if email is not None:
            email = email.strip().lower()
            if not EMAIL_PATTERN.match(email):
                raise ValidationError("email", "Invalid email format")
            if email != user.email:
                changes["email"] = email
        if name is not None and name != user.name:
            changes["name"] = name
        if phone is not None and phone != user.phone:
            changes["phone"] = phone
        if not changes:
            raise AdminError("NO_CHANGES", "No changes specified")

        email_changed = "email" in changes
        if email_changed:
            other = await self.users.get_by_email(changes["email"])
            if other is not None and other.id != user.id:
                raise ConflictError(f"A user with email {changes['email']} already exists", code="EMAIL_EXISTS")

        synced = False
        if email_changed and user.stripe_customer_id:
            await self.gateway.update_customer_email(user.stripe_customer_id, changes["email"])
            synced = True

        previous = {field: getattr(user, field) for field in changes}
        async with self._writing(f"update member {user_id}"):
            await self.users.update(user, **changes)
            card = await self.cards.get_card(user.id)
            if card is not None and card.status != MembershipStatus.DELETED.value:
                membership = await self.memberships.get_by_id(card.membership_id)
                if membership is not None:
                    await self.cards.update_card(CardContext(user=user, membership=membership))

            await self.audit.append(
                AuditAction.EMAIL_CHANGED if email_changed else AuditAction.MEMBER_UPDATED,
                performed_by=admin.id,
                performed_by_email=admin.email,
                user_id=user_id,
                details={
                    "previous_values": previous,
                    "new_values": changes,
                    "reason": reason,
                    "synced_to_provider": synced,
                },
            )
            await self.session.commit()
        logger.info(f"Admin {admin.id} updated member {user_id}: {sorted(changes)}")
        return UpdateMemberResult(member=await self._load_member(user), email_synced_to_provider=synced)

    async def adjust_membership(
        self,
        admin: AdminIdentity,
        user_id: str,
        membership_id: str,
        reason: Optional[str],
        end_date: Optional[datetime] = None,
        status: Optional[str] = None,
    ) -> MemberWithMembership:
        """Change a membership's end date and/or status; the card follows.

        Raises:
            AdminError: NO_CHANGES when neither end_date nor status is given.
            ValidationError: For a missing reason, unknown status or inverted window.
            NotFoundError: If the membership does not belong to the user.
            StorageError: If the change cannot be saved.
        """
        end_date = to_naive_utc(end_date)
        if end_date is None and status is None:
            raise AdminError("NO_CHANGES", "No changes specified")
        reason = _require_reason(reason)
        if status is not None and status not in {s.value for s in MembershipStatus}:
            raise ValidationError("status", f"Invalid status: {status}")

        user = await self._get_user(user_id)
        membership = await self.memberships.get_by_id(membership_id)
        if membership is None or membership.user_id != user_id:
            raise NotFoundError("Membership", membership_id)

        previous = {"end_date": _iso(membership.end_date), "status": membership.status}
        changes: Dict[str, Any] = {}
        if end_date is not None:
            changes["end_date"] = end_date
        if status is not None:
            changes["status"] = status

        async with self._writing(f"adjust membership {membership_id}"):
            membership = await self.memberships.update(membership, **changes)
            await self._sync_card_after_change(user, membership)

            await self.audit.append(
                AuditAction.MEMBERSHIP_ADJUSTMENT,
                performed_by=admin.id,
                performed_by_email=admin.email,
                user_id=user_id,
                details={
                    "membership_id": membership_id,
                    "changes": {k: _iso(v) if isinstance(v, datetime) else v for k, v in changes.items()},
                    "previous_values": previous,
                    "reason": reason,
                },
            )
            await self.session.commit()
        logger.info(f"Admin {admin.id} adjusted membership {membership_id}: {sorted(changes)}")
        return await self._load_member(user)

    async def _sync_card_after_change(self, user: User, membership: Membership) -> None:
        card = await self.cards.get_card(user.id)
        ctx = CardContext(user=user, membership=membership)
        if card is not None and card.membership_id == membership.id:
            await self.cards.update_card(ctx)
        elif card is None and membership.status in NON_TERMINAL_STATUSES:
            await self.cards.create_card(ctx)

    async def delete_member(
        self,
        admin: AdminIdentity,
        user_id: str,
        reason: Optional[str],
        cancel_subscription: bool = False,
    ) -> MemberWithMembership:
        """Soft-delete a member's memberships and card.

        Raises:
            ValidationError: If no reason is given.
            NotFoundError: If the user does not exist.
            ConflictError: If a live provider subscription exists and
                cancel_subscription is False. Nothing is written.
            StorageError: If the deletion cannot be saved.
        """
        reason = _require_reason(reason)
        user = await self._get_user(user_id)
        memberships = await self.memberships.list_for_user(user_id)

        live = [
            m for m in memberships
            if m.stripe_subscription_id and m.status in BLOCKING_SUBSCRIPTION_STATUSES
        ]
        if live and not cancel_subscription:
            subscription_id = live[0].stripe_subscription_id
            raise ConflictError(
                f"Member has an active subscription {subscription_id}; "
                f"cancel it before deleting the member",
                code="ACTIVE_SUBSCRIPTION",
                details={"subscription_id": subscription_id},
            )

        canceled = []
        for membership in live:
            await self.gateway.cancel_subscription(membership.stripe_subscription_id, reason=reason)
            canceled.append(membership.stripe_subscription_id)

        previous = [{"membership_id": m.id, "status": m.status} for m in memberships]
        async with self._writing(f"delete member {user_id}"):
            await self.memberships.soft_delete_for_user(user_id)
            await self.cards.mark_deleted(user_id)

            await self.audit.append(
                AuditAction.MEMBER_DELETED,
                performed_by=admin.id,
                performed_by_email=admin.email,
                user_id=user_id,
                details={
                    "reason": reason,
                    "previous_values": previous,
                    "canceled_subscriptions": canceled,
                },
            )
            await self.session.commit()
        logger.info(f"Admin {admin.id} deleted member {user_id}")
        return await self._load_member(user)

    async def bulk_import_members(self, admin: AdminIdentity, rows: List[Dict[str, Any]]) -> BulkImportResult:
        """Create members from import rows. Invalid rows are reported, not raised.

        Each valid row creates a user, a manual membership and, for a live
        status, a card. One BULK_IMPORT audit entry covers the whole call.
        """
        result = BulkImportResult()
        for row_number, raw in enumerate(rows, start=1):
            row, error = validate_row(raw, row_number)
            if error is not None:
                result.errors.append(error)
                continue

            if await self.users.get_by_email(row.email) is not None:
                result.errors.append(RowError(row=row_number, email=row.email, error="User already exists"))
                continue

            try:
                user = await self.users.create(email=row.email, name=row.name, phone=row.phone)
                membership = await self.memberships.create(
                    user_id=user.id,
                    plan_type=row.plan_type,
                    status=row.status,
                    start_date=row.start_date,
                    end_date=row.end_date,
                )
                if membership.status in NON_TERMINAL_STATUSES:
                    await self.cards.create_card(CardContext(user=user, membership=membership))
                await self.session.commit()
                result.created += 1
            except (SQLAlchemyError, CardError) as e:
                await self.session.rollback()
                logger.error(f"Import row {row_number} ({row.email}) failed: {e}")
                result.errors.append(RowError(row=row_number, email=row.email, error="Failed to save member"))

        async with self._writing("record bulk import"):
            await self.audit.append(
                AuditAction.BULK_IMPORT,
                performed_by=admin.id,
                performed_by_email=admin.email,
                details={
                    "total_rows": len(rows),
                    "created": result.created,
                    "errors": [e.model_dump() for e in result.errors[:50]],
                },
            )
            await self.session.commit()
        logger.info(f"Admin {admin.id} imported {result.created}/{len(rows)} members")
        return result

    async def bulk_import_csv(self, admin: AdminIdentity, csv_text: str) -> BulkImportResult:
        return await self.bulk_import_members(admin, parse_csv(csv_text))

    async def issue_refund(
        self,
        admin: AdminIdentity,
        user_id: str,
        payment_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        """Refund a payment through the billing provider.

        Raises:
            ValidationError: For a missing payment id or non-positive amount.
            ProviderError: If the provider rejects the refund.
            StorageError: If the refund cannot be recorded.
        """
        if not payment_id:
            raise ValidationError("payment_id", "Payment id is required")
        if amount is not None and amount <= 0:
            raise ValidationError("amount", "Amount must be positive")
        await self._get_user(user_id)

        refund = await self.gateway.issue_refund(payment_id, amount=amount, reason=reason)
        async with self._writing(f"record refund {refund.id}"):
            await self.audit.append(
                AuditAction.REFUND_ISSUED,
                performed_by=admin.id,
                performed_by_email=admin.email,
                user_id=user_id,
                details={
                    "payment_id": payment_id,
                    "refund_id": refund.id,
                    "amount": amount,
                    "reason": reason,
                },
            )
            await self.session.commit()
        return refund

    async def validate_reconciliation(self, email: str) -> ReconciliationReport:
        return await ReconciliationService(self.session, self.gateway).build_report(email)

    async def execute_reconciliation(
        self,
        email: str,
        admin: Optional[AdminIdentity] = None,
    ) -> ReconciliationResult:
        actor = admin.id if admin else None
        return await ReconciliationService(self.session, self.gateway).reconcile(email, actor_id=actor)

    async def process_webhook_event(self, event_id: str, event_type: str, data: Dict[str, Any]) -> WebhookOutcome:
        return await WebhookProcessor(self.session, self.gateway).process_event(event_id, event_type, data)

    async def verify_membership(self, membership_number: str) -> VerificationResult:
        return await self.cards.verify_membership(membership_number)

    async def verify_qr(self, data: str) -> VerificationResult:
        return await self.cards.verify_payload(data)
