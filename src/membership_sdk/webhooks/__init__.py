"""Billing webhook idempotency and processing."""

from .idempotency import AdmissionResult, WebhookIdempotencyGuard
from .processor import WebhookOutcome, WebhookProcessor

__all__ = [
    "AdmissionResult",
    "WebhookIdempotencyGuard",
    "WebhookOutcome",
    "WebhookProcessor",
]
