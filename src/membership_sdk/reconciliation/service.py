"""Service layer for membership reconciliation."""

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..cards.service import CardContext, MembershipCardService
from ..connectors.base import BillingGateway
from ..database.models import AuditAction, utcnow
from ..database.repository import AuditLogRepository, MembershipRepository, UserRepository
from ..errors import MembershipError
from .detector import detect_discrepancies, unique_tags
from .models import (
    ProviderSnapshot,
    ReconciliationReport,
    ReconciliationResult,
    StoreSnapshot,
)
from .planner import plan_actions
from .report import ReportGenerator
from .snapshots import build_provider_snapshot, build_store_snapshot

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class ReconciliationService:
    """Builds reconciliation reports and applies them for a single member."""

    def __init__(self, session: AsyncSession, gateway: BillingGateway):
        """Initialize the reconciliation service.

        Args:
            session: Async database session. Each reconciliation step commits on it.
            gateway: Billing provider gateway.
        """
        self.session = session
        self.gateway = gateway
        self.users = UserRepository(session)
        self.memberships = MembershipRepository(session)
        self.audit = AuditLogRepository(session)
        self.cards = MembershipCardService(session)

    async def fetch_provider_snapshot(self, email: str) -> Optional[ProviderSnapshot]:
        return await build_provider_snapshot(self.gateway, email)

    async def fetch_store_snapshot(
        self,
        email: str,
        subscription_id: Optional[str] = None,
    ) -> Optional[StoreSnapshot]:
        return await build_store_snapshot(self.session, email, subscription_id)

    async def build_report(self, email: str) -> ReconciliationReport:
        """Build a fresh report for an email from live provider and store reads.

        Raises:
            ProviderError: If the billing provider cannot be queried.
        """
        email = email.strip().lower()
        provider = await self.fetch_provider_snapshot(email)
        store = await self.fetch_store_snapshot(
            email, provider.subscription_id if provider else None
        )

        tags = detect_discrepancies(provider, store)
        plan = plan_actions(tags, provider, store)

        report = ReconciliationReport(
            email=email,
            provider_data=provider,
            store_data=store,
            discrepancies=unique_tags(tags),
            can_reconcile=plan.can_reconcile,
            reconcile_actions=plan.actions,
            generated_at=utcnow(),
        )
        logger.info(
            f"Reconciliation report for {email}: "
            f"{', '.join(t.value for t in report.discrepancies)}"
        )
        return report

    async def reconcile(self, email: str, actor_id: Optional[str] = None) -> ReconciliationResult:
        """Re-derive the report for an email and apply its corrections.

        Steps run in order and each commits on its own. A failing step aborts
        the rest; the result then carries the error and the flags of the steps
        that completed. Nothing is retried.

        Args:
            email: Member email.
            actor_id: Who triggered the run, recorded in the audit entry.

        Returns:
            ReconciliationResult describing what was done.
        """
        actor = actor_id or SYSTEM_ACTOR
        result = ReconciliationResult(success=False, email=email.strip().lower())
        actions: List[str] = []

        try:
            report = await self.build_report(email)
        except MembershipError as e:
            logger.error(f"Could not build reconciliation report for {email}: {e}")
            result.error = e.message
            result.error_kind = e.kind
            return result

        result.discrepancies = report.discrepancies

        if report.in_sync:
            result.success = True
            result.already_in_sync = True
            logger.info(f"{report.email} is already in sync")
            return result

        if not report.can_reconcile:
            result.error = "Cannot reconcile: " + "; ".join(report.reconcile_actions)
            return result

        provider = report.provider_data

        try:
            # Step 1: ensure the user exists and is linked to the billing customer
            user = await self.users.get_by_email(report.email)
            if user is None:
                user = await self.users.create(
                    email=provider.email,
                    name=provider.name,
                    stripe_customer_id=provider.customer_id,
                )
                result.user_created = True
                actions.append(f"Created user: {user.id}")
            elif user.stripe_customer_id != provider.customer_id:
                await self.users.link_customer(user, provider.customer_id)
                actions.append(f"Linked user {user.id} to billing customer {provider.customer_id}")
            await self.session.commit()

            # Step 2: upsert the membership for the provider subscription
            desired = {
                "plan_type": provider.plan_type,
                "status": provider.status,
                "start_date": provider.current_period_start,
                "end_date": provider.current_period_end,
                "auto_renew": provider.auto_renew,
            }
            membership = await self.memberships.get_by_subscription(user.id, provider.subscription_id)
            if membership is None or any(getattr(membership, k) != v for k, v in desired.items()):
                membership, created = await self.memberships.upsert_for_subscription(
                    user.id, provider.subscription_id, **desired
                )
                result.membership_updated = True
                verb = "Created" if created else "Updated"
                actions.append(f"{verb} membership: {provider.subscription_id}")
                await self.session.commit()

            # Step 3: project the canonical rows onto the card
            user = await self.users.get_by_id(user.id)
            membership = await self.memberships.get_by_id(membership.id)
            card, card_created = await self.cards.sync_card(CardContext(user=user, membership=membership))
            if card_created:
                result.card_created = True
                actions.append(f"Created membership card {card.membership_number}")
            else:
                result.card_updated = True
                actions.append(f"Updated membership card {card.membership_number} (number preserved)")
            await self.session.commit()

            # Step 4: audit
            await self.audit.append(
                AuditAction.RECONCILIATION,
                performed_by=actor,
                user_id=user.id,
                details={
                    "stripe_subscription_id": provider.subscription_id,
                    "discrepancies_fixed": [t.value for t in report.discrepancies],
                    "actions_performed": actions,
                },
            )
            await self.session.commit()
            result.success = True

        except (MembershipError, SQLAlchemyError) as e:
            await self.session.rollback()
            kind = e.kind if isinstance(e, MembershipError) else "storage"
            logger.error(f"Reconciliation for {report.email} stopped after {len(actions)} actions: {e}")
            result.error = str(e)
            result.error_kind = kind

        result.actions_performed = actions
        if result.success:
            logger.info(f"Reconciled {report.email}: {len(actions)} actions")
        return result

    def generate_report(self, report: ReconciliationReport, format: str = "json") -> str:
        """Render a report as 'json' or 'text'."""
        generator = ReportGenerator(report)
        if format == "json":
            return generator.to_json()
        if format == "text":
            return generator.to_text()
        raise ValueError(f"Unsupported format: {format}")
