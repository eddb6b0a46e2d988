"""Report rendering for reconciliation reports and results."""

import json
from typing import List

from .models import ReconciliationReport, ReconciliationResult


class ReportGenerator:
    """Renders a reconciliation report as JSON or human-readable text."""

    def __init__(self, report: ReconciliationReport):
        """Initialize the report generator.

        Args:
            report: The reconciliation report to render.
        """
        self.report = report

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include both snapshots. If False, only the summary.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        if include_details:
            data = self.report.to_full_dict()
        else:
            data = self.report.to_summary_dict()
        return json.dumps(data, indent=indent)

    def to_text(self) -> str:
        """Generate a human-readable text report.

        Returns:
            Formatted text with both snapshots, the discrepancies and the planned actions.
        """
        report = self.report
        lines = [
            "=" * 60,
            "MEMBERSHIP RECONCILIATION REPORT",
            "=" * 60,
            f"Email: {report.email}",
            f"Generated At: {report.generated_at.isoformat()}",
            "",
            "Billing Provider:",
        ]

        provider = report.provider_data
        if provider is None:
            lines.append("  (no customer or subscription)")
        else:
            lines.extend([
                f"  Customer: {provider.customer_id}",
                f"  Subscription: {provider.subscription_id}",
                f"  Status: {provider.status}",
                f"  Plan: {provider.plan_type}",
                f"  Period End: {provider.current_period_end.date().isoformat()}",
                f"  Auto Renew: {'yes' if provider.auto_renew else 'no'}",
            ])

        lines.extend(["", "Stored Records:"])
        store = report.store_data
        if store is None:
            lines.append("  (no user)")
        else:
            lines.append(f"  User: {store.user_id} ({store.email})")
            if store.membership:
                m = store.membership
                lines.append(
                    f"  Membership: {m.id}, Status: {m.status}, "
                    f"Plan: {m.plan_type}, Ends: {m.end_date.date().isoformat()}"
                )
            else:
                lines.append("  Membership: none")
            if store.card:
                c = store.card
                lines.append(
                    f"  Card: {c.membership_number}, Status: {c.status}, "
                    f"Plan: {c.plan_type}, Valid Until: {c.valid_until.date().isoformat()}"
                )
            else:
                lines.append("  Card: none")

        lines.extend(["", "Discrepancies:"])
        lines.extend(f"  - {tag.value}" for tag in report.discrepancies)

        lines.extend(["", f"Can Reconcile: {'yes' if report.can_reconcile else 'no'}"])
        if report.reconcile_actions:
            lines.append("Planned Actions:")
            lines.extend(_numbered(report.reconcile_actions))

        lines.append("=" * 60)
        return "\n".join(lines)


def format_result(result: ReconciliationResult) -> str:
    """Render an executed reconciliation result as text."""
    if result.already_in_sync:
        headline = "ALREADY IN SYNC"
    elif result.success:
        headline = "RECONCILED"
    else:
        headline = "FAILED"

    lines = [
        "=" * 60,
        f"RECONCILIATION {headline}: {result.email}",
        "=" * 60,
        f"  User Created: {result.user_created}",
        f"  Membership Updated: {result.membership_updated}",
        f"  Card Created: {result.card_created}",
        f"  Card Updated: {result.card_updated}",
    ]
    if result.actions_performed:
        lines.extend(["", "Actions Performed:"])
        lines.extend(_numbered(result.actions_performed))
    if result.error:
        lines.extend(["", "Error:", f"  [{result.error_kind or 'error'}] {result.error}"])
    lines.append("=" * 60)
    return "\n".join(lines)


def _numbered(items: List[str]) -> List[str]:
    return [f"  {i}. {item}" for i, item in enumerate(items, start=1)]
