import hashlib
import json

import pytest

from payhooks.config import Settings
from tests.conftest import sign


def post_card(client, payload, secret="card-secret", header="x-intasend-signature"):
    raw = json.dumps(payload).encode()
    return client.post(
        "/webhooks/card",
        content=raw,
        headers={header: sign(secret, raw), "Content-Type": "application/json"},
    )


def post_aggregator(client, payload, secret="aggregator-secret"):
    raw = json.dumps(payload).encode()
    return client.post(
        "/webhooks/aggregator",
        content=raw,
        headers={"x-paystack-signature": sign(secret, raw, hashlib.sha512), "Content-Type": "application/json"},
    )


def test_webhook_for_unknown_reference_is_404(client):
    response = post_card(client, {"api_ref": "order_1700000000_abc123", "state": "COMPLETE"})

    assert response.status_code == 404
    body = response.json()
    assert body["api_ref"] == "order_1700000000_abc123"
    assert body["request_id"].startswith("wh_")


def test_card_payment_lifecycle(client, payments, orders):
    created = client.post("/orders", json={"subtotal": "2500.00", "total_amount": "2500.00"}).json()

    response = post_card(client, {
        "invoice_id": "INV-100",
        "state": "COMPLETE",
        "provider": "CARD-PAYMENT",
        "api_ref": created["api_ref"],
        "value": "2500.00",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["verified"] is True
    assert body["applied"] is True
    assert body["order_updated"] is True
    assert body["payment_id"] == created["payment_id"]
    payment = payments.get(created["payment_id"])
    assert payment.status == "completed"
    assert payment.invoice_id == "INV-100"
    assert payment.tracking_id == "INV-100"
    assert payment.provider == "CARD-PAYMENT"
    order = orders.get(created["order_id"])
    assert order.payment_status == "completed"
    assert order.payment_method == "card"

    polled = client.get(f"/payments/{created['api_ref']}").json()
    assert polled["status"] == "completed"


def test_card_webhook_invalid_signature(client, payments, make_payment):
    payment_id, _ = make_payment("order_1700000000_sig001")

    response = post_card(client, {"api_ref": "order_1700000000_sig001", "state": "COMPLETE"}, secret="wrong")

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert payments.get(payment_id).status == "pending"


def test_card_webhook_missing_reference(client):
    response = post_card(client, {"state": "COMPLETE", "invoice_id": "INV-1"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing api_ref in webhook data"


def test_card_webhook_invalid_json(client):
    raw = b"{not json"

    response = client.post("/webhooks/card", content=raw, headers={"x-intasend-signature": sign("card-secret", raw)})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON payload"


def test_card_webhook_empty_body(client):
    response = client.post("/webhooks/card", content=b"", headers={"x-intasend-signature": "test_signature_123"})

    assert response.status_code == 400
    assert response.json()["detail"] == "No event data"


def test_aggregator_charge_failed(client, payments, orders, make_payment):
    payment_id, order_id = make_payment("order_1700000000_ps0001", provider="aggregator")
    neighbour_id, neighbour_order = make_payment("order_1700000000_ps00012", provider="aggregator")

    response = post_aggregator(client, {
        "event": "charge.failed",
        "data": {"id": 4411, "reference": "order_1700000000_ps0001", "amount": 250000, "channel": "card"},
    })

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert payments.get(payment_id).status == "failed"
    assert orders.get(order_id).payment_status == "failed"
    assert payments.get(neighbour_id).status == "pending"
    assert orders.get(neighbour_order).payment_status == "pending"


def test_aggregator_channel_maps_payment_method(client, orders, make_payment):
    _, order_id = make_payment("order_1700000000_ps0002", provider="aggregator")

    response = post_aggregator(client, {
        "event": "charge.success",
        "data": {"reference": "order_1700000000_ps0002", "channel": "mobile_money"},
    })

    assert response.status_code == 200
    order = orders.get(order_id)
    assert order.payment_status == "completed"
    assert order.payment_method == "mobile_money"


@pytest.mark.parametrize("metadata", [0, "", None, "order_1700000000_ps0004"])
def test_aggregator_accepts_non_object_metadata(client, payments, make_payment, metadata):
    payment_id, _ = make_payment("order_1700000000_ps0004", provider="aggregator")

    response = post_aggregator(client, {
        "event": "charge.success",
        "data": {"reference": "order_1700000000_ps0004", "amount": 250000, "metadata": metadata},
    })

    assert response.status_code == 200
    assert payments.get(payment_id).status == "completed"


def test_aggregator_rejects_sha256_signature(client, make_payment):
    make_payment("order_1700000000_ps0003", provider="aggregator")
    raw = json.dumps({"event": "charge.success", "data": {"reference": "order_1700000000_ps0003"}}).encode()

    response = client.post("/webhooks/aggregator", content=raw, headers={"x-paystack-signature": sign("aggregator-secret", raw)})

    assert response.status_code == 400


def test_mobile_money_flow(client, payments, orders, status_cache):
    initiated = client.post(
        "/payments/mobile-money",
        json={"subtotal": "150", "total_amount": "150", "phone_number": "254700000000"},
    ).json()["data"]

    response = client.post("/webhooks/mobile-money", json={
        "invoice_id": initiated["invoice_id"],
        "state": "COMPLETE",
        "provider": "M-PESA",
        "api_ref": initiated["api_ref"],
        "value": 150,
        "mpesa_reference": "QWE123RTY",
    })

    assert response.status_code == 200
    assert response.json()["verified"] is True
    assert response.json()["applied"] is True
    assert payments.get(initiated["payment_id"]).status == "completed"
    assert orders.get(initiated["order_id"]).payment_method == "mpesa"
    assert status_cache.get(initiated["api_ref"]).mpesa_reference == "QWE123RTY"

    poll = client.get(f"/payments/mobile-money/status/{initiated['transaction_id']}")
    assert poll.json()["success"] is True


def test_mobile_money_failure_reason_is_tracked(client, status_cache):
    initiated = client.post(
        "/payments/mobile-money",
        json={"subtotal": "150", "total_amount": "150", "phone_number": "254700000000"},
    ).json()["data"]

    client.post("/webhooks/mobile-money", json={
        "orderId": initiated["api_ref"],
        "state": "FAILED",
        "failed_reason": "Request cancelled by user",
    })

    poll = client.get(f"/payments/mobile-money/status/{initiated['api_ref']}").json()
    assert poll["success"] is False
    assert poll["data"]["status"] == "failed"
    assert poll["data"]["error"] == "Request cancelled by user"


def test_mobile_money_unknown_reference_is_404(client):
    response = client.post("/webhooks/mobile-money", json={"api_ref": "order_unknown", "state": "COMPLETE"})

    assert response.status_code == 404


def test_duplicate_delivery_is_harmless(client, payments, make_payment):
    payment_id, _ = make_payment("order_1700000000_dup001")
    payload = {"api_ref": "order_1700000000_dup001", "state": "COMPLETE", "invoice_id": "INV-5"}

    first = post_card(client, payload)
    second = post_card(client, payload)

    assert first.status_code == second.status_code == 200
    assert second.json()["applied"] is True
    assert payments.get(payment_id).status == "completed"


def test_failed_payment_completed_later_is_overwritten(client, payments, orders, make_payment):
    payment_id, order_id = make_payment("order_1700000000_late01", status="failed")

    response = post_card(client, {"api_ref": "order_1700000000_late01", "state": "COMPLETE"})

    assert response.status_code == 200
    assert response.json()["applied"] is True
    assert response.json()["order_updated"] is True
    assert payments.get(payment_id).status == "completed"
    assert orders.get(order_id).payment_status == "completed"


def test_out_of_order_delivery_is_not_applied_when_enforced(client, monkeypatch, payments, make_payment):
    payment_id, _ = make_payment("order_1700000000_ooo001", status="completed")
    settings = Settings(status_transitions="enforce")
    monkeypatch.setattr("payhooks.dependencies.get_settings", lambda: settings)

    response = post_card(client, {"api_ref": "order_1700000000_ooo001", "state": "PENDING"})

    assert response.status_code == 200
    assert response.json()["applied"] is False
    assert response.json()["status"] == "completed"
    assert payments.get(payment_id).status == "completed"


def test_strict_production_requires_signature(client, monkeypatch, make_payment):
    make_payment("order_1700000000_prod01")
    settings = Settings(app_env="production", card_webhook_secret="card-secret")
    monkeypatch.setattr("payhooks.dependencies.get_settings", lambda: settings)

    response = client.post("/webhooks/card", json={"api_ref": "order_1700000000_prod01", "state": "COMPLETE"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing signature header"
    assert response.json()["required"] is True


def test_unexpected_error_is_500(client, mocker):
    mocker.patch("payhooks.webhooks.normalize", side_effect=RuntimeError("boom"))

    response = post_card(client, {"api_ref": "order_1700000000_err001", "state": "COMPLETE"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Internal server error"
    assert "request_id" in response.json()
