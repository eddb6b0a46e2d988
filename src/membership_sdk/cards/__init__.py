"""Membership card lifecycle."""

from .service import CardContext, MembershipCardService, VerificationResult
from .verification import (
    build_verification_payload,
    format_membership_number,
    parse_verification_payload,
)

__all__ = [
    "CardContext",
    "MembershipCardService",
    "VerificationResult",
    "build_verification_payload",
    "format_membership_number",
    "parse_verification_payload",
]
