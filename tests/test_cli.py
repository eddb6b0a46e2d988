"""Tests for the reconciliation CLI."""

import json
import pytest

from membership_sdk.connectors import SimulatorConfig, SimulatorGateway
from membership_sdk.reconciliation.cli import create_parser, main

from conftest import INDIVIDUAL_PRICE

EMAIL = "member@example.com"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def seeded_gateway(period_end):
    gateway = SimulatorGateway()
    gateway.add_customer(EMAIL, name="Pat Member", customer_id="cus_1")
    gateway.add_subscription("cus_1", period_end=period_end, price_id=INDIVIDUAL_PRICE, subscription_id="sub_1")
    return gateway


class TestParser:
    def test_validate_arguments(self):
        args = create_parser().parse_args(["validate", "--email", EMAIL, "--format", "json"])

        assert args.command == "validate"
        assert args.email == EMAIL
        assert args.format == "json"

    def test_email_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["reconcile"])

    def test_no_command(self):
        assert main([]) == 1


class TestValidateCommand:
    def test_discrepancies_exit_one(self, database_url, seeded_gateway, capsys):
        code = main(["--database-url", database_url, "validate", "--email", EMAIL], gateway=seeded_gateway)

        assert code == 1
        out = capsys.readouterr().out
        assert "MEMBERSHIP RECONCILIATION REPORT" in out
        assert "MISSING_USER" in out

    def test_provider_failure_exits_two(self, database_url):
        gateway = SimulatorGateway(SimulatorConfig(failing_operations=["get_customer_by_email"]))

        code = main(["--database-url", database_url, "validate", "--email", EMAIL], gateway=gateway)

        assert code == 2

    def test_json_output_file(self, database_url, seeded_gateway, tmp_path):
        output = tmp_path / "report.json"

        main(
            ["--database-url", database_url, "validate", "--email", EMAIL, "--format", "json", "--output", str(output)],
            gateway=seeded_gateway,
        )

        data = json.loads(output.read_text())
        assert data["discrepancies"] == ["MISSING_USER", "MISSING_MEMBERSHIP", "MISSING_CARD"]


class TestReconcileCommand:
    def test_reconcile_then_validate_in_sync(self, database_url, seeded_gateway, capsys):
        code = main(
            ["--database-url", database_url, "reconcile", "--email", EMAIL, "--actor", "ops"],
            gateway=seeded_gateway,
        )
        assert code == 0
        assert f"RECONCILIATION RECONCILED: {EMAIL}" in capsys.readouterr().out

        code = main(["--database-url", database_url, "validate", "--email", EMAIL], gateway=seeded_gateway)
        assert code == 0

    def test_reconcile_json(self, database_url, seeded_gateway, capsys):
        main(
            ["--database-url", database_url, "reconcile", "--email", EMAIL, "--format", "json"],
            gateway=seeded_gateway,
        )

        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert result["card_created"] is True

    def test_unreconcilable_exits_two(self, database_url):
        code = main(["--database-url", database_url, "reconcile", "--email", EMAIL], gateway=SimulatorGateway())
        assert code == 2


class TestCleanupCommand:
    def test_cleanup(self, database_url, capsys):
        code = main(["--database-url", database_url, "cleanup-webhooks", "--days", "7"])

        assert code == 0
        assert "Deleted 0 webhook events older than 7 days" in capsys.readouterr().out

    def test_negative_days(self, database_url):
        assert main(["--database-url", database_url, "cleanup-webhooks", "--days", "-1"]) == 1
