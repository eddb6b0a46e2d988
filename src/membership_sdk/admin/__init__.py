"""Membership administration."""

from .importer import ImportRow, RowError, parse_csv, validate_row
from .service import (
    AdminMembershipService,
    BulkImportResult,
    MemberExport,
    MemberSearchResult,
    MembershipStats,
    MemberWithMembership,
    UpdateMemberResult,
)

__all__ = [
    "ImportRow",
    "RowError",
    "parse_csv",
    "validate_row",
    "AdminMembershipService",
    "BulkImportResult",
    "MemberExport",
    "MemberSearchResult",
    "MembershipStats",
    "MemberWithMembership",
    "UpdateMemberResult",
]
