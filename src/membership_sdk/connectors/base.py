import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel

from ..database.models import PlanType

# Subscription statuses preferred when a customer has several subscriptions
PREFERRED_SUBSCRIPTION_STATUSES = ("active", "past_due")


# Canonical models
class BillingCustomer(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


class BillingSubscription(BaseModel):
    id: str
    customer_id: str
    status: str  # provider status, e.g. active|past_due|canceled|trialing
    price_id: Optional[str] = None
    current_period_start: datetime  # naive UTC
    current_period_end: datetime  # naive UTC
    cancel_at_period_end: bool = False
    created: Optional[datetime] = None


class Refund(BaseModel):
    id: str
    payment_id: str
    amount: Optional[int] = None  # minor units
    status: str
    reason: Optional[str] = None


class Payment(BaseModel):
    id: str
    created: datetime  # naive UTC
    amount: int  # minor units
    currency: str
    status: str  # paid|failed|refunded|pending
    description: Optional[str] = None
    invoice_url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    refundable: bool = False


class WebhookEventPayload(BaseModel):
    id: str
    type: str
    data: Dict[str, Any]


def resolve_plan_type(price_id: Optional[str]) -> PlanType:
    """Map a billing price id to a plan type; unknown prices are individual."""
    family_price = os.getenv("STRIPE_PRICE_FAMILY")
    if family_price and price_id == family_price:
        return PlanType.FAMILY
    return PlanType.INDIVIDUAL


def choose_subscription(subscriptions: List[BillingSubscription]) -> Optional[BillingSubscription]:
    """Pick the subscription that represents the customer's membership.

    The first active or past-due subscription wins, else the most recent one.
    """
    if not subscriptions:
        return None
    for subscription in subscriptions:
        if subscription.status in PREFERRED_SUBSCRIPTION_STATUSES:
            return subscription
    return subscriptions[0]


class BillingGateway(ABC):
    """
    Billing provider interface consumed by reconciliation and admin flows.
    Listing methods return newest first. All methods raise ProviderError on
    upstream failure.
    """

    name = "base"

    @abstractmethod
    async def get_customer_by_email(self, email: str) -> Optional[BillingCustomer]:
        raise NotImplementedError

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[BillingCustomer]:
        raise NotImplementedError

    @abstractmethod
    async def update_customer_email(self, customer_id: str, email: str) -> BillingCustomer:
        raise NotImplementedError

    @abstractmethod
    async def list_payments(self, customer_id: str, limit: int = 50) -> List[Payment]:
        """List a customer's invoice payments, newest first."""
        raise NotImplementedError

    @abstractmethod
    async def list_subscriptions(self, customer_id: str) -> List[BillingSubscription]:
        """List every subscription of a customer, whatever its status."""
        raise NotImplementedError

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[BillingSubscription]:
        raise NotImplementedError

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> BillingSubscription:
        raise NotImplementedError

    @abstractmethod
    async def issue_refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEventPayload:
        """
        Validate a provider webhook payload and return the canonical event.
        Raises ValueError on an invalid signature or payload.
        """
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}
