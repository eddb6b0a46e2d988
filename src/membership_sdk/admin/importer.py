"""Row format and validation for bulk member imports."""

import csv
import io
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from ..database.models import MembershipStatus, PlanType, to_naive_utc

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y")

# Normalized header -> field name
HEADER_ALIASES = {
    "email": "email",
    "emailaddress": "email",
    "name": "name",
    "phone": "phone",
    "plantype": "plan_type",
    "plan": "plan_type",
    "type": "plan_type",
    "startdate": "start_date",
    "start": "start_date",
    "enddate": "end_date",
    "end": "end_date",
    "expiration": "end_date",
    "expires": "end_date",
    "status": "status",
}


class ImportRow(BaseModel):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    plan_type: str
    start_date: datetime
    end_date: datetime
    status: str = MembershipStatus.ACTIVE.value


class RowError(BaseModel):
    row: int
    email: Optional[str] = None
    error: str


def normalize_header(header: str) -> str:
    key = re.sub(r"[\s_\-]", "", header.strip().lower())
    return HEADER_ALIASES.get(key, key)


def normalize_keys(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {normalize_header(k): v for k, v in raw.items() if k is not None}


def parse_csv(text: str) -> List[Dict[str, Any]]:
    """Parse CSV text into dicts keyed by normalized field names."""
    reader = csv.DictReader(io.StringIO(text.strip()))
    return [normalize_keys(row) for row in reader]


def parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str):
        return None
    value = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    value = str(value).strip()
    return value or None


def validate_row(raw: Dict[str, Any], row_number: int) -> Tuple[Optional[ImportRow], Optional[RowError]]:
    """Validate one import row.

    Args:
        raw: Row values keyed by field name or any accepted header alias.
        row_number: 1-based row number used in error reports.

    Returns:
        Tuple of (row, None) when valid, else (None, error) listing every problem.
    """
    data = normalize_keys(raw)
    errors: List[str] = []

    email = (_clean(data.get("email")) or "").lower()
    if not email:
        errors.append("Email is required")
    elif not EMAIL_PATTERN.match(email):
        errors.append("Invalid email format")

    plan_type = (_clean(data.get("plan_type")) or "").lower()
    if not plan_type:
        errors.append("Plan type is required")
    elif plan_type not in {p.value for p in PlanType}:
        errors.append('Plan type must be "individual" or "family"')

    start_date = end_date = None
    if not _clean(data.get("start_date")):
        errors.append("Start date is required")
    else:
        start_date = parse_date(data["start_date"])
        if start_date is None:
            errors.append("Invalid start date format (use YYYY-MM-DD or MM/DD/YYYY)")
    if not _clean(data.get("end_date")):
        errors.append("End date is required")
    else:
        end_date = parse_date(data["end_date"])
        if end_date is None:
            errors.append("Invalid end date format (use YYYY-MM-DD or MM/DD/YYYY)")
    if start_date and end_date and end_date <= start_date:
        errors.append("End date must be after start date")

    status = (_clean(data.get("status")) or MembershipStatus.ACTIVE.value).lower()
    if status not in {s.value for s in MembershipStatus} or status == MembershipStatus.DELETED.value:
        errors.append(f"Invalid status: {status}")

    if errors:
        return None, RowError(row=row_number, email=email or None, error="; ".join(errors))

    return ImportRow(
        email=email,
        name=_clean(data.get("name")),
        phone=_clean(data.get("phone")),
        plan_type=plan_type,
        start_date=start_date,
        end_date=end_date,
        status=status,
    ), None
