"""Billing provider gateways."""

from .base import (
    BillingGateway,
    BillingCustomer,
    BillingSubscription,
    Payment,
    Refund,
    WebhookEventPayload,
    choose_subscription,
    resolve_plan_type,
)
from .stripe_connector import StripeGateway
from .simulator_connector import (
    SimulatorGateway,
    SimulatorConfig,
    SimulatedSubscription,
)

__all__ = [
    # Base classes and models
    "BillingGateway",
    "BillingCustomer",
    "BillingSubscription",
    "Payment",
    "Refund",
    "WebhookEventPayload",
    "choose_subscription",
    "resolve_plan_type",
    # Gateways
    "StripeGateway",
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatedSubscription",
]
