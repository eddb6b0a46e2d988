"""Tests for API endpoints."""

import json
import pytest
from datetime import datetime, timedelta

from httpx import ASGITransport, AsyncClient

from membership_sdk.admin.api import get_billing_gateway
from membership_sdk.api import app
from membership_sdk.auth import limiter
from membership_sdk.cards import build_verification_payload
from membership_sdk.database import get_db, make_session_factory

from conftest import INDIVIDUAL_PRICE, make_session_token

IMPORT_ROW = {
    "email": "alice@example.com",
    "name": "Alice",
    "plan_type": "individual",
    "start_date": "2025-01-01",
    "end_date": "2035-12-31",
}


@pytest.fixture
async def client(db_engine, gateway):
    """Async test client bound to the in-memory database and simulator gateway."""
    session_factory = make_session_factory(db_engine)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_gateway] = lambda: gateway
    limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.enabled = True


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_session_token()}"}


async def import_member(client, auth_headers, **overrides):
    row = dict(IMPORT_ROW, **overrides)
    response = await client.post("/admin/members/import", json={"rows": [row]}, headers=auth_headers)
    assert response.json()["created"] == 1
    search = await client.get("/admin/members", params={"q": row["email"]}, headers=auth_headers)
    return search.json()["items"][0]


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}


class TestAdminAuth:
    """Tests for the admin session check."""

    async def test_missing_token(self, client):
        response = await client.get("/admin/check")
        assert response.status_code in (401, 403)

    async def test_admin_token(self, client, auth_headers):
        response = await client.get("/admin/check", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"is_admin": True, "id": "admin_1", "email": "admin@club.org"}

    async def test_non_admin_token(self, client):
        headers = {"Authorization": f"Bearer {make_session_token(admin=False)}"}

        response = await client.get("/admin/check", headers=headers)

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "unauthorized"

    async def test_expired_token(self, client):
        headers = {"Authorization": f"Bearer {make_session_token(expires_in=timedelta(minutes=-5))}"}

        response = await client.get("/admin/check", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == {
            "kind": "session",
            "code": "SESSION",
            "message": "Session expired",
        }


class TestMemberEndpoints:
    """Tests for member administration endpoints."""

    async def test_import_and_search(self, client, auth_headers):
        member = await import_member(client, auth_headers)

        assert member["user"]["email"] == "alice@example.com"
        assert member["card"]["membership_number"]

        response = await client.get(f"/admin/members/{member['user']['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["active_membership"]["plan_type"] == "individual"

    async def test_import_csv(self, client, auth_headers):
        text = "email,plan_type,start_date,end_date\nbob@example.com,family,2025-01-01,2025-12-31\n"

        response = await client.post("/admin/members/import", json={"csv": text}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"created": 1, "errors": []}

    async def test_import_requires_rows_or_csv(self, client, auth_headers):
        response = await client.post("/admin/members/import", json={}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "validation"

    async def test_unknown_member(self, client, auth_headers):
        response = await client.get("/admin/members/missing", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    async def test_invalid_page_size(self, client, auth_headers):
        response = await client.get("/admin/members", params={"page_size": 500}, headers=auth_headers)
        assert response.status_code == 400

    async def test_adjust_without_changes(self, client, auth_headers):
        member = await import_member(client, auth_headers)
        url = f"/admin/members/{member['user']['id']}/memberships/{member['active_membership']['id']}"

        response = await client.patch(url, json={"reason": "No-op"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NO_CHANGES"

    async def test_adjust_membership(self, client, auth_headers):
        member = await import_member(client, auth_headers)
        user_id = member["user"]["id"]
        url = f"/admin/members/{user_id}/memberships/{member['active_membership']['id']}"

        response = await client.patch(
            url,
            json={"reason": "Goodwill", "end_date": "2036-06-30T00:00:00"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["card"]["valid_until"] == "2036-06-30T00:00:00"
        assert response.json()["card"]["membership_number"] == member["card"]["membership_number"]

        audit = await client.get(f"/admin/members/{user_id}/audit", headers=auth_headers)
        assert audit.json()["items"][0]["action"] == "MEMBERSHIP_ADJUSTMENT"

    async def test_delete_member(self, client, auth_headers):
        member = await import_member(client, auth_headers)

        response = await client.request(
            "DELETE",
            f"/admin/members/{member['user']['id']}",
            json={"reason": "Requested by member"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["card"]["status"] == "deleted"

    async def test_refund(self, client, auth_headers, gateway):
        member = await import_member(client, auth_headers)

        response = await client.post(
            f"/admin/members/{member['user']['id']}/refund",
            json={"payment_id": "pi_123", "amount": 1500},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["amount"] == 1500
        assert len(gateway.refunds) == 1

    async def test_expiring(self, client, auth_headers):
        await import_member(client, auth_headers)

        response = await client.get("/admin/members/expiring", params={"days": 30}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"items": [], "total": 0}

    async def test_verify(self, client, auth_headers):
        member = await import_member(client, auth_headers)
        number = member["card"]["membership_number"]

        response = await client.get(f"/admin/verify/{number}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["valid"] is True
        assert response.json()["message"] == "Valid membership"

    async def test_adjust_with_utc_suffix(self, client, auth_headers):
        member = await import_member(client, auth_headers)
        url = f"/admin/members/{member['user']['id']}/memberships/{member['active_membership']['id']}"

        response = await client.patch(
            url,
            json={"reason": "Goodwill", "end_date": "2036-06-30T00:00:00Z"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["active_membership"]["end_date"] == "2036-06-30T00:00:00"
        assert response.json()["card"]["valid_until"] == "2036-06-30T00:00:00"

    async def test_create_and_update_member(self, client, auth_headers):
        created = await client.post(
            "/admin/members",
            json={
                "email": "carol@example.com",
                "plan_type": "family",
                "start_date": "2025-01-01T00:00:00Z",
                "end_date": "2030-01-01T00:00:00Z",
                "status": "complimentary",
            },
            headers=auth_headers,
        )

        assert created.status_code == 201
        user_id = created.json()["user"]["id"]
        assert created.json()["card"]["plan_type"] == "family"

        duplicate = await client.post(
            "/admin/members",
            json={"email": "Carol@example.com", "plan_type": "family",
                  "start_date": "2025-01-01T00:00:00", "end_date": "2030-01-01T00:00:00"},
            headers=auth_headers,
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "EMAIL_EXISTS"

        updated = await client.patch(
            f"/admin/members/{user_id}",
            json={"name": "Carol C", "reason": "Spelling"},
            headers=auth_headers,
        )

        assert updated.status_code == 200
        assert updated.json()["member"]["user"]["name"] == "Carol C"
        assert updated.json()["email_synced_to_provider"] is False

        audit = await client.get(f"/admin/members/{user_id}/audit", headers=auth_headers)
        assert {e["action"] for e in audit.json()["items"]} == {"MEMBER_CREATED", "MEMBER_UPDATED"}

    async def test_payment_history(self, client, auth_headers, gateway):
        created = await client.post(
            "/admin/members",
            json={"email": "dave@example.com", "plan_type": "individual", "start_date": "2025-01-01T00:00:00",
                  "end_date": "2030-01-01T00:00:00", "stripe_customer_id": "cus_dave"},
            headers=auth_headers,
        )
        payment = gateway.add_payment("cus_dave", 4500)

        response = await client.get(f"/admin/members/{created.json()['user']['id']}/payments", headers=auth_headers)

        assert response.status_code == 200
        assert [p["id"] for p in response.json()["items"]] == [payment.id]
        assert response.json()["items"][0]["amount"] == 4500

    async def test_stats(self, client, auth_headers):
        await import_member(client, auth_headers)
        await import_member(client, auth_headers, email="bob@example.com", plan_type="family")

        response = await client.get("/admin/stats", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total_members"] == 2
        assert response.json()["active_members"] == 2
        assert response.json()["family_plans"] == 1

    async def test_export_csv(self, client, auth_headers):
        member = await import_member(client, auth_headers)

        response = await client.post("/admin/export", json={"format": "csv"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"].startswith('attachment; filename="members-')
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("Membership Number,Name,Email")
        assert lines[1].startswith(f"{member['card']['membership_number']},Alice,alice@example.com")

    async def test_export_unknown_format(self, client, auth_headers):
        response = await client.post("/admin/export", json={"format": "pdf"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "format"}

    async def test_verify_qr(self, client, auth_headers):
        member = await import_member(client, auth_headers)
        qr_data = build_verification_payload(
            member["card"]["membership_number"], member["user"]["id"], datetime(2035, 12, 31)
        )

        response = await client.post("/admin/verify/qr", json={"qr_data": qr_data}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["valid"] is True
        assert response.json()["membership_number"] == member["card"]["membership_number"]

        forged = await client.post("/admin/verify/qr", json={"qr_data": "garbage"}, headers=auth_headers)
        assert forged.status_code == 200
        assert forged.json()["valid"] is False
        assert forged.json()["message"] == "Invalid verification code"


class TestReconcileEndpoints:
    """Tests for admin reconciliation endpoints."""

    @pytest.fixture
    def subscriber(self, gateway, period_end):
        gateway.add_customer("member@example.com", name="Pat Member", customer_id="cus_1")
        return gateway.add_subscription(
            "cus_1", period_end=period_end, price_id=INDIVIDUAL_PRICE, subscription_id="sub_1"
        )

    async def test_validate_then_reconcile(self, client, auth_headers, subscriber):
        report = await client.get("/admin/reconcile", params={"email": "member@example.com"}, headers=auth_headers)

        assert report.status_code == 200
        assert report.json()["discrepancies"] == ["MISSING_USER", "MISSING_MEMBERSHIP", "MISSING_CARD"]
        assert report.json()["can_reconcile"] is True

        result = await client.post("/admin/reconcile", json={"email": "member@example.com"}, headers=auth_headers)

        assert result.status_code == 200
        assert result.json()["success"] is True
        assert result.json()["card_created"] is True

        again = await client.post("/admin/reconcile", json={"email": "member@example.com"}, headers=auth_headers)
        assert again.json()["already_in_sync"] is True

    async def test_delete_blocked_by_subscription(self, client, auth_headers, subscriber):
        await client.post("/admin/reconcile", json={"email": "member@example.com"}, headers=auth_headers)
        search = await client.get("/admin/members", params={"q": "member@example.com"}, headers=auth_headers)
        user_id = search.json()["items"][0]["user"]["id"]

        response = await client.request(
            "DELETE",
            f"/admin/members/{user_id}",
            json={"reason": "Requested"},
            headers=auth_headers,
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ACTIVE_SUBSCRIPTION"
        assert error["details"] == {"subscription_id": "sub_1"}


class TestStripeWebhook:
    """Tests for the webhook endpoint."""

    @pytest.fixture
    def event(self, gateway, period_end):
        gateway.add_customer("member@example.com", customer_id="cus_1")
        gateway.add_subscription("cus_1", period_end=period_end, price_id=INDIVIDUAL_PRICE, subscription_id="sub_1")
        return {
            "id": "evt_1",
            "type": "customer.subscription.created",
            "data": {"object": {"id": "sub_1", "customer": "cus_1"}},
        }

    async def test_webhook_processed_once(self, client, event):
        body = json.dumps(event)

        first = await client.post("/webhooks/stripe", content=body)
        second = await client.post("/webhooks/stripe", content=body)

        assert first.status_code == 200
        assert first.json() == {"received": True, "event_id": "evt_1", "duplicate": False, "handled": True}
        assert second.json()["duplicate"] is True
        assert second.json()["handled"] is False

    async def test_invalid_payload(self, client):
        response = await client.post("/webhooks/stripe", content=b"not json")
        assert response.status_code == 400
