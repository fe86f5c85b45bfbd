from __future__ import annotations

import json

from refund_recon import cli


def _run(monkeypatch, capsys, *argv) -> tuple[int, dict]:
    monkeypatch.setattr("sys.argv", ["refund-recon", *argv])
    code = cli.main()
    return code, json.loads(capsys.readouterr().out)


def test_cli_remaining_and_recompute(monkeypatch, capsys, make_order):
    order_id = make_order(refunds=[{"amount_cents": 3000, "selections": [{"itemId": "A", "quantity": 1}]}])

    code, body = _run(monkeypatch, capsys, "remaining", order_id)
    assert code == 0
    assert body["orderRemainingCents"] == 7000

    code, body = _run(monkeypatch, capsys, "recompute", order_id)
    assert code == 0
    assert body["summary"]["perItemRefundedQty"] == {"A": 1}


def test_cli_reconcile_flags_drifted_counter(monkeypatch, capsys, make_order):
    order_id = make_order(refunds=[{"amount_cents": 500}], refunded_total_cents=0)

    code, body = _run(monkeypatch, capsys, "reconcile", "--order-id", order_id)
    assert code == 1
    failed = [check["rule"] for check in body["checks"] if not check["passed"]]
    assert failed == ["counter_matches_log"]


def test_cli_backfill_and_unknown_order(monkeypatch, capsys, make_order):
    order_id = make_order(refunds=[{"amount_cents": 3000, "selections": [{"itemId": "A", "quantity": 1}]}])

    code, body = _run(monkeypatch, capsys, "backfill-selections", order_id)
    assert code == 0
    assert body["changed"] == {order_id: 1}

    code, body = _run(monkeypatch, capsys, "remaining", "missing-order")
    assert code == 1
    assert body["code"] == "ORDER_NOT_FOUND"
