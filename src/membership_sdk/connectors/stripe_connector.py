import os
import json
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

import stripe

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

stripe.api_key = os.getenv("STRIPE_API_KEY", "")


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _subscription_from_stripe(sub: Any) -> BillingSubscription:
    items = (sub.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    # Newer API versions report the billing period on the subscription item
    period_start = sub.get("current_period_start") or first_item.get("current_period_start")
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")

    customer = sub.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return BillingSubscription(
        id=sub["id"],
        customer_id=customer,
        status=sub["status"],
        price_id=price.get("id"),
        current_period_start=_from_timestamp(period_start),
        current_period_end=_from_timestamp(period_end),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        created=_from_timestamp(sub.get("created")),
    )


# Invoice statuses mapped onto payment history statuses
INVOICE_STATUS_MAP = {
    "paid": "paid",
    "open": "pending",
    "draft": "pending",
    "uncollectible": "failed",
    "void": "failed",
}


def _payment_from_invoice(invoice: Any) -> Payment:
    status = INVOICE_STATUS_MAP.get(invoice.get("status"), "pending")
    payment_intent = invoice.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    if status == "paid" and invoice.get("post_payment_credit_notes_amount"):
        status = "refunded"

    paid = invoice.get("amount_paid")
    return Payment(
        id=invoice["id"],
        created=_from_timestamp(invoice.get("created")),
        amount=paid if paid else invoice.get("amount_due") or 0,
        currency=invoice.get("currency") or "usd",
        status=status,
        description=invoice.get("description"),
        invoice_url=invoice.get("hosted_invoice_url"),
        payment_intent_id=payment_intent,
        refundable=status == "paid" and payment_intent is not None,
    )


def _customer_from_stripe(customer: Any) -> BillingCustomer:
    return BillingCustomer(
        id=customer["id"],
        email=customer.get("email"),
        name=customer.get("name"),
        phone=customer.get("phone"),
    )


class StripeGateway(BillingGateway):
    """
    Stripe billing gateway using stripe-python. SDK calls are blocking, so each
    one runs in a worker thread. Stripe errors surface as ProviderError.
    """

    name = "stripe"

    def __init__(self, api_key: Optional[str] = None):
        if api_key:
            stripe.api_key = api_key
        if not stripe.api_key:
            logger.warning("STRIPE_API_KEY is not configured; Stripe calls will fail")

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProviderError(f"Stripe {operation} failed: {e.user_message or str(e)}") from e

    async def get_customer_by_email(self, email: str) -> Optional[BillingCustomer]:
        result = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        if not result.data:
            return None
        return _customer_from_stripe(result.data[0])

    async def get_customer(self, customer_id: str) -> Optional[BillingCustomer]:
        try:
            customer = await self._call("customer retrieve", stripe.Customer.retrieve, customer_id)
        except ProviderError as e:
            if isinstance(e.__cause__, stripe.error.InvalidRequestError):
                return None
            raise
        if customer.get("deleted"):
            return None
        return _customer_from_stripe(customer)

    async def update_customer_email(self, customer_id: str, email: str) -> BillingCustomer:
        customer = await self._call("customer update", stripe.Customer.modify, customer_id, email=email)
        logger.info(f"Updated Stripe customer {customer_id} email")
        return _customer_from_stripe(customer)

    async def list_payments(self, customer_id: str, limit: int = 50) -> List[Payment]:
        result = await self._call(
            "invoice list",
            stripe.Invoice.list,
            customer=customer_id,
            limit=min(limit, 100),
        )
        return [_payment_from_invoice(invoice) for invoice in result.data]

    async def list_subscriptions(self, customer_id: str) -> List[BillingSubscription]:
        result = await self._call(
            "subscription list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=100,
        )
        return [_subscription_from_stripe(sub) for sub in result.data]

    async def get_subscription(self, subscription_id: str) -> Optional[BillingSubscription]:
        try:
            sub = await self._call("subscription retrieve", stripe.Subscription.retrieve, subscription_id)
        except ProviderError as e:
            if isinstance(e.__cause__, stripe.error.InvalidRequestError):
                return None
            raise
        return _subscription_from_stripe(sub)

    async def cancel_subscription(self, subscription_id: str, reason: Optional[str] = None) -> BillingSubscription:
        kwargs: Dict[str, Any] = {}
        if reason:
            kwargs["cancellation_details"] = {"comment": reason[:500]}
        sub = await self._call("subscription cancel", stripe.Subscription.cancel, subscription_id, **kwargs)
        logger.info(f"Canceled Stripe subscription {subscription_id}")
        return _subscription_from_stripe(sub)

    async def issue_refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        params: Dict[str, Any] = {"reason": "requested_by_customer"}
        # Charges and payment intents are both refundable
        if payment_id.startswith("ch_"):
            params["charge"] = payment_id
        else:
            params["payment_intent"] = payment_id
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["metadata"] = {"admin_reason": reason[:500]}

        r = await self._call("refund", stripe.Refund.create, **params)
        logger.info(f"Issued Stripe refund {r['id']} for {payment_id}")
        return Refund(id=r["id"], payment_id=payment_id, amount=r.get("amount"), status=r.get("status"), reason=reason)

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> WebhookEventPayload:
        webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
        lowered = {k.lower(): v for k, v in headers.items()}
        if webhook_secret:
            sig_header = lowered.get("stripe-signature", "")
            try:
                event = stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=webhook_secret)
            except (ValueError, stripe.error.SignatureVerificationError) as e:
                raise ValueError("Invalid webhook signature") from e
            event = event.to_dict()
        else:
            # unsigned parsing is only suitable for local development
            logger.warning("STRIPE_WEBHOOK_SECRET is not configured; accepting unsigned webhook")
            try:
                event = json.loads(body)
            except ValueError as e:
                raise ValueError("Invalid webhook payload") from e

        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise ValueError("Invalid webhook payload")
        return WebhookEventPayload(id=event["id"], type=event["type"], data=event.get("data") or {})
