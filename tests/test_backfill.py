from __future__ import annotations

import pytest

from refund_recon.domain.errors import OrderNotFoundError
from refund_recon.ledger.store import RefundLedgerStore
from refund_recon.services.backfill import backfill_selections


def test_backfill_rewrites_only_legacy_shapes(session, make_order):
    canonical = [{"type": "quantity", "itemId": "B", "quantity": 1, "unitAmount": 4000, "amountTotal": 4000}]
    order_id = make_order(
        refunds=[
            {"amount_cents": 3000, "selections": [{"itemId": "A", "quantity": 1}]},
            {"amount_cents": 700, "selections": [{"itemId": "A", "blockType": "amount", "amount": 700}]},
            {"amount_cents": 500, "selections": [{"itemId": "A"}]},
            {"amount_cents": 4000, "selections": canonical},
        ]
    )

    assert backfill_selections(session, order_id) == 2

    by_amount = {row.amount_cents: row.selections for row in RefundLedgerStore(session).list_refunds(order_id)}
    assert by_amount[3000] == [
        {"type": "quantity", "itemId": "A", "quantity": 1, "unitAmount": 3000, "amountTotal": 6000}
    ]
    assert by_amount[700] == [
        {"type": "amount", "itemId": "A", "amountCents": 700, "unitAmount": 3000, "amountTotal": 6000}
    ]
    assert by_amount[500] == [{"itemId": "A"}]
    assert by_amount[4000] == canonical

    assert backfill_selections(session, order_id) == 0


def test_backfill_unknown_order(session):
    with pytest.raises(OrderNotFoundError):
        backfill_selections(session, "missing-order")
