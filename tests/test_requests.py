from __future__ import annotations

import pytest

from refund_recon.domain.errors import RefundValidationError
from refund_recon.domain.money import AmountSelection, QuantitySelection
from refund_recon.domain.readers import read_order
from refund_recon.domain.requests import (
    RefundOptions,
    build_idempotency_key,
    normalize_selections,
    normalize_staff_input,
    refund_total_cents,
    selection_snapshot,
)

ORDER = read_order(
    {
        "id": "o1",
        "totalCents": 10000,
        "items": [
            {"id": "A", "quantity": 2, "unitAmount": 3000, "amountTotal": 6000},
            {"id": "B", "quantity": 1, "unitAmount": 4000, "amountTotal": 4000},
        ],
    }
)


def test_idempotency_key_ignores_selection_order_and_notes():
    first = [QuantitySelection("A", 1), AmountSelection("B", 500)]
    second = [AmountSelection("B", 500), QuantitySelection("A", 1)]

    key_a = build_idempotency_key("o1", first, RefundOptions(notes="customer called"))
    key_b = build_idempotency_key("o1", second, RefundOptions(notes="retry"))
    assert key_a == key_b


def test_idempotency_key_changes_with_money_fields():
    sels = [QuantitySelection("A", 1)]
    base = build_idempotency_key("o1", sels)
    assert base == build_idempotency_key("o1", sels, RefundOptions())
    assert base != build_idempotency_key("o1", sels, RefundOptions(restocking_fee_cents=100))
    assert base != build_idempotency_key("o1", sels, RefundOptions(reason="duplicate"))
    assert base != build_idempotency_key("o2", sels)


def test_normalize_merges_duplicates_and_amount_wins():
    normalized = normalize_selections(
        ORDER,
        [
            QuantitySelection("B", 1),
            QuantitySelection("A", 1),
            QuantitySelection("A", 1),
            AmountSelection("B", 100),
            AmountSelection("B", 150),
        ],
    )
    assert [sel.to_dict() for sel in normalized] == [
        {"type": "quantity", "itemId": "A", "quantity": 2},
        {"type": "amount", "itemId": "B", "amountCents": 250},
    ]


def test_normalize_rejects_unknown_items():
    with pytest.raises(RefundValidationError) as excinfo:
        normalize_selections(ORDER, [QuantitySelection("Z", 1)])
    assert excinfo.value.field_errors == {"selections": ["unknown itemId Z"]}
    assert excinfo.value.to_dict()["code"] == "VALIDATION_ERROR"


def test_staff_input_clamps_quantities_and_prefers_amount():
    selections = normalize_staff_input(
        ORDER,
        quantities_by_item={"A": 5, "B": 1},
        amounts_by_item={"B": 1250},
        remaining_qty_by_item={"A": 1, "B": 1},
    )
    assert selections == [QuantitySelection("A", 1), AmountSelection("B", 1250)]

    assert normalize_staff_input(ORDER, quantities_by_item={"A": 0}) == []


def test_refund_total_adds_shipping_and_subtracts_restocking():
    options = RefundOptions(refund_shipping_cents=500, restocking_fee_cents=300)
    assert refund_total_cents(ORDER, [QuantitySelection("A", 1)], options) == 3200


def test_negative_fees_rejected():
    with pytest.raises(RefundValidationError):
        RefundOptions(restocking_fee_cents=-1)


def test_gateway_reason_drops_other():
    assert RefundOptions(reason="other").gateway_reason is None
    assert RefundOptions(reason="fraudulent").gateway_reason == "fraudulent"


def test_selection_snapshot_carries_line_prices():
    snapshot = selection_snapshot(ORDER.line("A"), QuantitySelection("A", 1))
    assert snapshot == {"type": "quantity", "itemId": "A", "quantity": 1, "unitAmount": 3000, "amountTotal": 6000}
