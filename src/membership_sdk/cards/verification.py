"""Membership numbers and signed card verification payloads."""

import os
import hmac
import json
import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_NUMBER_PREFIX = "MEM"
SIGNATURE_LENGTH = 8


def get_number_prefix() -> str:
    return os.getenv("MEMBERSHIP_NUMBER_PREFIX", DEFAULT_NUMBER_PREFIX)


def format_membership_number(year: int, sequence: int, prefix: Optional[str] = None) -> str:
    """Format a membership number, e.g. ``MEM-2025-000042``."""
    return f"{prefix or get_number_prefix()}-{year}-{sequence:06d}"


def _signing_secret() -> bytes:
    secret = os.getenv("CARD_SIGNING_SECRET")
    if not secret:
        logger.warning("CARD_SIGNING_SECRET is not configured; using development secret")
        secret = "development-card-secret"
    return secret.encode("utf-8")


def _signature(membership_number: str, user_ref: str, valid_until: str) -> str:
    message = f"{membership_number}:{user_ref}:{valid_until}".encode("utf-8")
    return hmac.new(_signing_secret(), message, hashlib.sha256).hexdigest()[:SIGNATURE_LENGTH]


def build_verification_payload(membership_number: str, user_id: str, valid_until: datetime) -> str:
    """Build the compact signed JSON encoded into a card's QR code."""
    user_ref = user_id[:8]
    valid = valid_until.strftime("%Y%m%d")
    payload = {
        "mn": membership_number,
        "u": user_ref,
        "v": valid,
        "s": _signature(membership_number, user_ref, valid),
    }
    return json.dumps(payload, separators=(",", ":"))


def parse_verification_payload(data: str) -> Optional[Dict[str, Any]]:
    """Decode a scanned payload and check its signature.

    Returns:
        The decoded payload, or None if it is malformed or the signature does
        not match.
    """
    try:
        payload = json.loads(data)
        number, user_ref, valid, signature = payload["mn"], payload["u"], payload["v"], payload["s"]
    except (ValueError, KeyError, TypeError):
        return None

    if not all(isinstance(v, str) for v in (number, user_ref, valid, signature)):
        return None
    if not hmac.compare_digest(_signature(number, user_ref, valid), signature):
        logger.warning(f"Verification payload signature mismatch for {number}")
        return None
    return payload
