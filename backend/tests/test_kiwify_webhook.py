"""
Kiwify webhook end to end: route -> service -> resolver -> reconciler,
against the in-memory store.
"""
import json

import pytest

from services.kiwify_webhook_service import compute_signature, kiwify_webhook_service
from services.billing_errors import InvalidSignature

WEBHOOK_URL = "/api/webhooks/kiwify"


def _order_paid(email="a@x.com", **overrides):
    body = {
        "webhook_event_type": "order_paid",
        "order_id": "O1",
        "Customer": {"email": email},
        "Product": {"id": "pro"},
        "updated_at": "2024-05-01T12:00:00Z",
    }
    body.update(overrides)
    return body


def _refund(email="a@x.com", **overrides):
    body = {
        "webhook_event_type": "refund",
        "order_id": "O1",
        "Customer": {"email": email},
        "updated_at": "2024-05-02T12:00:00Z",
    }
    body.update(overrides)
    return body


@pytest.fixture
def tenant(memory_db):
    memory_db.add_member("a@x.com", "user-1", "tenant-1")
    return "tenant-1"


class TestWebhookRoute:
    def test_order_paid_then_refund(self, client, memory_db, tenant):
        response = client.post(WEBHOOK_URL, json=_order_paid())
        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "PROCESSED"}

        row = memory_db.subscriptions.docs[0]
        assert row["tenant_id"] == tenant
        assert row["status"] == "active"
        assert row["plan_id"] == "pro"
        assert row["cancel_at_period_end"] is False

        response = client.post(WEBHOOK_URL, json=_refund())
        assert response.status_code == 200
        row = memory_db.subscriptions.docs[0]
        assert row["status"] == "canceled"
        assert row["cancel_at_period_end"] is True

    def test_alias_route(self, client, memory_db, tenant):
        response = client.post("/api/webhook/kiwify", json=_order_paid())
        assert response.status_code == 200
        assert len(memory_db.subscriptions.docs) == 1

    def test_missing_email_acknowledged_without_mutation(self, client, memory_db, tenant):
        response = client.post(WEBHOOK_URL, json=_order_paid(Customer={}))

        assert response.status_code == 200
        assert response.json()["outcome"] == "MISSING_EMAIL"
        assert memory_db.subscriptions.calls == []
        assert memory_db.billing_webhook_events.docs[0]["outcome"] == "MISSING_EMAIL"

    def test_unknown_email_acknowledged(self, client, memory_db, tenant):
        response = client.post(WEBHOOK_URL, json=_order_paid(email="stranger@x.com"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "TENANT_NOT_FOUND"
        assert memory_db.subscriptions.docs == []
        delivery = memory_db.billing_webhook_events.docs[0]
        assert delivery["reason"] == "NO_PROFILE"
        assert delivery["email"] == "stranger@x.com"

    def test_unrecognized_kind_acknowledged(self, client, memory_db, tenant):
        response = client.post(WEBHOOK_URL, json=_order_paid(webhook_event_type="boleto_gerado"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "UNRECOGNIZED_EVENT"
        assert memory_db.subscriptions.docs == []

    def test_malformed_body_is_400(self, client, memory_db):
        response = client.post(
            WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert "error" in response.json()

    def test_store_failure_is_503(self, client, memory_db, tenant):
        memory_db.subscriptions.fail = True

        response = client.post(WEBHOOK_URL, json=_order_paid())

        assert response.status_code == 503
        assert memory_db.billing_webhook_events.docs[0]["outcome"] == "FAILED"

    def test_stale_event_acknowledged(self, client, memory_db, tenant):
        client.post(WEBHOOK_URL, json=_refund())  # no row yet -> NO_SUBSCRIPTION
        client.post(WEBHOOK_URL, json=_order_paid(updated_at="2024-05-03T00:00:00Z"))

        response = client.post(WEBHOOK_URL, json=_refund())

        assert response.status_code == 200
        assert response.json()["outcome"] == "STALE_EVENT"
        assert memory_db.subscriptions.docs[0]["status"] == "active"
        outcomes = [d["outcome"] for d in memory_db.billing_webhook_events.docs]
        assert outcomes == ["NO_SUBSCRIPTION", "PROCESSED", "STALE_EVENT"]

    def test_refund_on_row_with_legacy_status(self, client, memory_db, tenant):
        memory_db.subscriptions.docs.append(
            {"tenant_id": tenant, "plan_id": "pro", "status": "past_due", "cancel_at_period_end": False}
        )

        response = client.post(WEBHOOK_URL, json=_refund())

        assert response.status_code == 200
        assert response.json()["outcome"] == "PROCESSED"
        assert memory_db.subscriptions.docs[0]["status"] == "canceled"
        audit = memory_db.audit_logs.docs[-1]
        assert audit["before_state"]["status"] is None
        assert audit["after_state"]["status"] == "canceled"

    def test_payment_retry_after_refund_keeps_canceled(self, client, memory_db, tenant):
        paid = _order_paid()
        refund = _refund()
        del paid["updated_at"], refund["updated_at"]

        client.post(WEBHOOK_URL, json=paid)
        client.post(WEBHOOK_URL, json=refund)
        response = client.post(WEBHOOK_URL, json=paid)

        assert response.status_code == 200
        assert response.json()["outcome"] == "STALE_EVENT"
        assert memory_db.subscriptions.docs[0]["status"] == "canceled"


class TestSignature:
    def test_valid_signature_accepted(self, client, memory_db, tenant, monkeypatch):
        monkeypatch.setenv("KIWIFY_WEBHOOK_TOKEN", "secret-token")
        payload = json.dumps(_order_paid()).encode()

        response = client.post(
            WEBHOOK_URL,
            params={"signature": compute_signature(payload, "secret-token")},
            content=payload,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "PROCESSED"

    def test_bad_signature_rejected(self, client, memory_db, tenant, monkeypatch):
        monkeypatch.setenv("KIWIFY_WEBHOOK_TOKEN", "secret-token")

        response = client.post(WEBHOOK_URL, params={"signature": "deadbeef"}, json=_order_paid())

        assert response.status_code == 400
        assert memory_db.subscriptions.docs == []

    def test_missing_signature_rejected_when_token_set(self, monkeypatch):
        monkeypatch.setenv("KIWIFY_WEBHOOK_TOKEN", "secret-token")

        with pytest.raises(InvalidSignature):
            kiwify_webhook_service.verify_signature(b"{}", None)


class TestAudit:
    @pytest.mark.asyncio
    async def test_activation_is_audited(self, memory_db, tenant):
        result = await kiwify_webhook_service.process_webhook(json.dumps(_order_paid()).encode())

        assert result.tenant_id == tenant
        audit = memory_db.audit_logs.docs[0]
        assert audit["action"] == "SUBSCRIPTION_ACTIVATED"
        assert audit["actor_role"] == "SYSTEM"
        assert audit["tenant_id"] == tenant
        assert audit["before_state"] is None
        assert audit["after_state"]["status"] == "active"

    @pytest.mark.asyncio
    async def test_delivery_log_failure_does_not_change_result(self, memory_db, tenant):
        memory_db.billing_webhook_events.fail = True

        result = await kiwify_webhook_service.process_webhook(json.dumps(_order_paid()).encode())

        assert result.outcome.value == "PROCESSED"
        assert memory_db.subscriptions.docs[0]["status"] == "active"
