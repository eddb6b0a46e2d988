"""Simulator gateway for exercising membership flows without real billing calls."""

import json
import uuid
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..database.models import utcnow
from ..errors import ProviderError
from .base import (
    BillingGateway,
    BillingCustomer,
    BillingSubscription,
    Payment,
    Refund,
    WebhookEventPayload,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulatedSubscription:
    """In-memory representation of a simulated subscription."""
    id: str
    customer_id: str
    status: str
    price_id: Optional[str]
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    created: datetime = field(default_factory=utcnow)

    def to_model(self) -> BillingSubscription:
        return BillingSubscription(
            id=self.id,
            customer_id=self.customer_id,
            status=self.status,
            price_id=self.price_id,
            current_period_start=self.current_period_start,
            current_period_end=self.current_period_end,
            cancel_at_period_end=self.cancel_at_period_end,
            created=self.created,
        )


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    # Operation names (e.g. "list_subscriptions") that raise ProviderError
    failing_operations: List[str] = field(default_factory=list)


class SimulatorGateway(BillingGateway):
    """
    Billing gateway backed by in-memory customers and subscriptions.

    Features:
    - Seed customers and subscriptions directly from tests or local scripts
    - Cancellation and refunds recorded for later assertions
    - Per-operation failure injection
    """

    name = "simulator"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._customers: Dict[str, BillingCustomer] = {}
        self._subscriptions: Dict[str, SimulatedSubscription] = {}
        self.refunds: List[Refund] = []
        self._payments: Dict[str, List[Payment]] = {}
        self.canceled: List[str] = []
        logger.info("SimulatorGateway initialized")

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}_sim_{uuid.uuid4().hex[:16]}"

    def _check(self, operation: str) -> None:
        if operation in self.config.failing_operations:
            raise ProviderError(f"Simulated {operation} failure")

    def add_customer(
        self,
        email: str,
        name: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> BillingCustomer:
        customer = BillingCustomer(id=customer_id or self._generate_id("cus"), email=email, name=name)
        self._customers[customer.id] = customer
        return customer

    def add_subscription(
        self,
        customer_id: str,
        status: str = "active",
        period_end: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
        price_id: Optional[str] = None,
        cancel_at_period_end: bool = False,
        subscription_id: Optional[str] = None,
    ) -> SimulatedSubscription:
        period_end = period_end or utcnow() + timedelta(days=365)
        subscription = SimulatedSubscription(
            id=subscription_id or self._generate_id("sub"),
            customer_id=customer_id,
            status=status,
            price_id=price_id,
            current_period_start=period_start or period_end - timedelta(days=365),
            current_period_end=period_end,
            cancel_at_period_end=cancel_at_period_end,
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    def set_subscription_status(self, subscription_id: str, status: str) -> None:
        self._subscriptions[subscription_id].status = status

    def add_payment(
        self,
        customer_id: str,
        amount: int,
        status: str = "paid",
        created: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Payment:
        payment = Payment(
            id=self._generate_id("in"),
            created=created or utcnow(),
            amount=amount,
            currency="usd",
            status=status,
            description=description,
            payment_intent_id=self._generate_id("pi"),
            refundable=status == "paid",
        )
        self._payments.setdefault(customer_id, []).append(payment)
        return payment

    async def get_customer_by_email(self, email: str) -> Optional[BillingCustomer]:
        self._check("get_customer_by_email")
        wanted = email.strip().lower()
        for customer in self._customers.values():
            if customer.email and customer.email.lower() == wanted:
                return customer
        return None

    async def get_customer(self, customer_id: str) -> Optional[BillingCustomer]:
        self._check("get_customer")
        return self._customers.get(customer_id)

    async def update_customer_email(self, customer_id: str, email: str) -> BillingCustomer:
        self._check("update_customer_email")
        customer = self._customers.get(customer_id)
        if customer is None:
            raise ProviderError(f"No such customer: {customer_id}")
        customer.email = email
        return customer

    async def list_payments(self, customer_id: str, limit: int = 50) -> List[Payment]:
        self._check("list_payments")
        payments = sorted(self._payments.get(customer_id, []), key=lambda p: p.created, reverse=True)
        return payments[:limit]

    async def list_subscriptions(self, customer_id: str) -> List[BillingSubscription]:
        self._check("list_subscriptions")
        subs = [s for s in self._subscriptions.values() if s.customer_id == customer_id]
        subs.sort(key=lambda s: s.created, reverse=True)
        return [s.to_model() for s in subs]

    async def get_subscription(self, subscription_id: str) -> Optional[BillingSubscription]:
        self._check("get_subscription")
        sub = self._subscriptions.get(subscription_id)
        return sub.to_model() if sub else None

    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> BillingSubscription:
        self._check("cancel_subscription")
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise ProviderError(f"No such subscription: {subscription_id}")
        sub.status = "canceled"
        self.canceled.append(subscription_id)
        logger.info(f"Simulator canceled subscription {subscription_id}: {reason}")
        return sub.to_model()

    async def issue_refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        self._check("issue_refund")
        refund = Refund(
            id=self._generate_id("re"),
            payment_id=payment_id,
            amount=amount,
            status="succeeded",
            reason=reason,
        )
        self.refunds.append(refund)
        return refund

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEventPayload:
        try:
            event = json.loads(body)
            return WebhookEventPayload(id=event["id"], type=event["type"], data=event.get("data") or {})
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError("Invalid webhook payload") from e
