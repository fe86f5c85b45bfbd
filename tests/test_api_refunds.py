from __future__ import annotations


def _create(client, headers, **body):
    return client.post("/refunds", json=body, headers=headers)


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_remaining_requires_staff_api_key(client, auth_headers, make_order):
    order_id = make_order()

    assert client.get("/refunds/remaining", params={"orderId": order_id}).status_code == 401
    assert (
        client.get("/refunds/remaining", params={"orderId": order_id}, headers={"X-API-Key": "nope"}).status_code
        == 401
    )

    forbidden = client.get("/refunds/remaining", params={"orderId": order_id}, headers=auth_headers["customer"])
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "FORBIDDEN"
    assert forbidden.json()["orderId"] == order_id

    ok = client.get(
        "/refunds/remaining",
        params={"orderId": order_id},
        headers={"Authorization": f"Bearer {auth_headers['system']['X-API-Key']}"},
    )
    assert ok.status_code == 200


def test_remaining_missing_or_unknown_order(client, auth_headers):
    missing = client.get("/refunds/remaining", headers=auth_headers["staff"])
    assert missing.status_code == 400
    assert missing.json()["code"] == "VALIDATION_ERROR"
    assert "orderId" in missing.json()["details"]["fieldErrors"]

    unknown = client.get("/refunds/remaining", params={"orderId": "nope"}, headers=auth_headers["staff"])
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Order not found", "code": "ORDER_NOT_FOUND", "orderId": "nope"}


def test_refund_flow_end_to_end(client, auth_headers, gateway, make_order):
    order_id = make_order(total_cents=10800, shipping_cents=800)
    staff = auth_headers["staff"]

    created = _create(
        client,
        staff,
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1}],
        reason="requested_by_customer",
        notes="damaged in transit",
    )
    assert created.status_code == 200, created.text
    body = created.json()
    assert body["ok"] is True
    assert body["amountCents"] == 3000
    assert body["status"] == "succeeded"
    assert body["replayed"] is False
    assert body["reconciliationNeeded"] is False
    assert body["gatewayRefundId"].startswith("re_fake_")

    replay = _create(
        client,
        staff,
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1}],
        reason="requested_by_customer",
    )
    assert replay.json()["replayed"] is True
    assert replay.json()["refundId"] == body["refundId"]
    assert len(gateway.calls) == 1

    remaining = client.get("/refunds/remaining", params={"orderId": order_id}, headers=staff).json()
    assert remaining["ok"] is True
    assert remaining["orderRemainingCents"] == 7800
    assert remaining["perItemRemainingQty"] == {"A": 1, "B": 1}
    assert remaining["perItemRefundedQty"] == {"A": 1}
    assert remaining["shipping"] == {"originalCents": 800, "refundedCents": 0, "remainingCents": 800}

    listed = client.get("/refunds", params={"orderId": order_id}, headers=staff).json()
    assert listed["count"] == 1
    assert listed["refunds"][0]["selections"][0]["unitAmount"] == 3000
    assert listed["refunds"][0]["notes"] == "damaged in transit"

    reconcile = client.get("/refunds/reconcile", params={"orderId": order_id}, headers=staff).json()
    assert reconcile["ok"] is True
    assert reconcile["partiallyAppliedAttempts"] == []


def test_shipping_over_remaining_is_409(client, auth_headers, make_order):
    order_id = make_order(total_cents=10800, shipping_cents=800)

    resp = _create(
        client,
        auth_headers["staff"],
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1}],
        refundShippingCents=900,
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "EXCEEDS_REMAINING"
    assert resp.json()["remainingShippingCents"] == 800


def test_fully_refunded_order_is_409(client, auth_headers, make_order):
    order_id = make_order(refunds=[{"amount_cents": 10000}], refunded_total_cents=10000, status="refunded")

    resp = _create(
        client,
        auth_headers["staff"],
        orderId=order_id,
        selections=[{"type": "amount", "itemId": "B", "amountCents": 100}],
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_FULLY_REFUNDED"
    assert resp.json()["orderId"] == order_id


def test_request_body_validation(client, auth_headers, make_order):
    order_id = make_order()
    staff = auth_headers["staff"]

    too_many = _create(
        client, staff, orderId=order_id, selections=[{"type": "quantity", "itemId": "A", "quantity": 101}]
    )
    assert too_many.status_code == 400
    assert too_many.json()["code"] == "VALIDATION_ERROR"

    both_fields = _create(
        client,
        staff,
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1, "amountCents": 100}],
    )
    assert both_fields.status_code == 400

    untagged = _create(client, staff, orderId=order_id, selections=[{"itemId": "A", "quantity": 1}])
    assert untagged.status_code == 400

    empty = _create(client, staff, orderId=order_id, selections=[])
    assert empty.status_code == 400
    assert empty.json()["details"]["formErrors"]

    short_key = _create(
        client,
        staff,
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1}],
        idempotencyKey="short",
    )
    assert short_key.status_code == 400
    assert "idempotencyKey" in short_key.json()["details"]["fieldErrors"]

    unknown_item = _create(
        client, staff, orderId=order_id, selections=[{"type": "quantity", "itemId": "Z", "quantity": 1}]
    )
    assert unknown_item.status_code == 400
    assert unknown_item.json()["details"]["fieldErrors"]["selections"] == ["unknown itemId Z"]


def test_customer_cannot_create_refund(client, auth_headers, gateway, make_order):
    order_id = make_order()

    resp = _create(
        client,
        auth_headers["customer"],
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1}],
    )
    assert resp.status_code == 403
    assert gateway.calls == []


def test_preview_normalizes_staff_input(client, auth_headers, gateway, make_order):
    order_id = make_order()

    resp = client.post(
        "/refunds/preview",
        json={
            "orderId": order_id,
            "quantitiesByItemId": {"A": 5, "B": 1},
            "amountsByItemId": {"B": "12.50"},
            "restockingFeeCents": 250,
        },
        headers=auth_headers["staff"],
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["selections"] == [
        {"type": "quantity", "itemId": "A", "quantity": 2},
        {"type": "amount", "itemId": "B", "amountCents": 1250},
    ]
    assert body["itemsSubtotalCents"] == 7250
    assert body["previewCents"] == 7000
    assert body["withinRemaining"] is True
    assert body["idempotencyKey"]
    assert gateway.calls == []


def test_recompute_endpoint(client, auth_headers, make_order):
    order_id = make_order(refunds=[{"amount_cents": 4000, "selections": [{"itemId": "B"}]}], refunded_total_cents=1)

    resp = client.post("/refunds/recompute", json={"orderId": order_id}, headers=auth_headers["system"])
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["summary"]["orderRemainingCents"] == 6000
    assert body["summary"]["fullyRefundedItemIds"] == ["B"]

    reconcile = client.get("/refunds/reconcile", params={"orderId": order_id}, headers=auth_headers["staff"]).json()
    counter = {check["rule"]: check["passed"] for check in reconcile["checks"]}
    assert counter["counter_matches_log"] is True


def test_gateway_error_is_502(client, auth_headers, gateway, make_order, monkeypatch):
    from refund_recon.domain.errors import GatewayError

    order_id = make_order()

    def _decline(request, idempotency_key):
        raise GatewayError("payment gateway rejected refund: status=402", order_id=request.order_id)

    monkeypatch.setattr(gateway, "create_refund", _decline)

    resp = _create(
        client,
        auth_headers["staff"],
        orderId=order_id,
        selections=[{"type": "quantity", "itemId": "A", "quantity": 1}],
    )
    assert resp.status_code == 502
    assert resp.json()["code"] == "GATEWAY_ERROR"
