"""Billing webhook processing on top of the idempotency guard."""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..connectors.base import BillingGateway
from ..database.repository import UserRepository
from ..errors import MembershipError
from ..reconciliation.models import ReconciliationResult
from ..reconciliation.service import ReconciliationService
from .idempotency import WebhookIdempotencyGuard

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = "webhook"

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
CHECKOUT_COMPLETED = "checkout.session.completed"
HANDLED_EVENTS = SUBSCRIPTION_EVENTS + (CHECKOUT_COMPLETED,)


class WebhookOutcome(BaseModel):
    event_id: str
    event_type: str
    admitted: bool
    handled: bool = False
    email: Optional[str] = None
    reconciliation: Optional[ReconciliationResult] = None


class WebhookProcessor:
    """Admits, dispatches and settles billing webhook events.

    Subscription and checkout events are turned into a reconciliation run for
    the customer's email, so every write re-reads provider state first.
    """

    def __init__(self, session: AsyncSession, gateway: BillingGateway):
        self.session = session
        self.gateway = gateway
        self.guard = WebhookIdempotencyGuard(session)
        self.users = UserRepository(session)

    async def process_event(self, event_id: str, event_type: str, data: Dict[str, Any]) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            event_id: Provider event id, the idempotency key.
            event_type: Provider event type.
            data: The event's ``data`` object.

        Returns:
            WebhookOutcome; ``admitted`` is False for an already-handled event.

        Raises:
            MembershipError: If handling failed. The event is marked failed first.
        """
        admission = await self.guard.admit(event_id, event_type)
        outcome = WebhookOutcome(event_id=event_id, event_type=event_type, admitted=admission.admitted)
        if not admission.admitted:
            return outcome

        try:
            if event_type in HANDLED_EVENTS:
                await self._handle_membership_event(event_type, data, outcome)
            else:
                logger.info(f"Ignoring webhook event type {event_type}")
        except Exception as e:
            await self.session.rollback()
            await self.guard.fail(event_id, str(e))
            raise

        await self.guard.complete(event_id)
        return outcome

    async def _handle_membership_event(self, event_type: str, data: Dict[str, Any], outcome: WebhookOutcome) -> None:
        obj = data.get("object") or {}
        email = await self.resolve_email(event_type, obj)
        if email is None:
            logger.warning(f"Could not resolve member email for {event_type} {outcome.event_id}")
            return

        outcome.email = email
        result = await ReconciliationService(self.session, self.gateway).reconcile(email, actor_id=WEBHOOK_ACTOR)
        outcome.reconciliation = result
        outcome.handled = result.success

        if result.error_kind:
            raise MembershipError(
                f"Reconciliation for {email} failed: {result.error}",
                code="RECONCILIATION_FAILED",
            )
        if not result.success:
            logger.warning(f"Webhook {outcome.event_id} left {email} unreconciled: {result.error}")

    async def resolve_email(self, event_type: str, obj: Dict[str, Any]) -> Optional[str]:
        """Find the member email an event refers to: payload, then store, then provider."""
        if event_type == CHECKOUT_COMPLETED:
            details = obj.get("customer_details") or {}
            email = details.get("email") or obj.get("customer_email")
            if email:
                return email.strip().lower()

        customer_id = obj.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        if not customer_id:
            return None

        user = await self.users.get_by_stripe_customer_id(customer_id)
        if user is not None:
            return user.email

        customer = await self.gateway.get_customer(customer_id)
        if customer is not None and customer.email:
            return customer.email.strip().lower()
        return None
