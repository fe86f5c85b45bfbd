from __future__ import annotations

import pytest

from refund_recon.domain.money import (
    AmountSelection,
    QuantitySelection,
    clamp,
    parse_money_to_cents,
    prorate_cents,
    selection_from_dict,
    sort_selections,
)


def test_prorate_rounds_half_to_even_at_the_cent():
    assert prorate_cents(1001, 1, 2) == 500
    assert prorate_cents(1003, 1, 2) == 502
    assert prorate_cents(6000, 1, 2) == 3000
    assert prorate_cents(1000, 1, 3) == 333
    assert prorate_cents(1000, 2, 3) == 667


def test_prorate_full_quantity_returns_line_total():
    assert prorate_cents(999, 3, 3) == 999


def test_clamp_handles_inverted_bounds():
    assert clamp(5, 0, 3) == 3
    assert clamp(-1, 0, 3) == 0
    assert clamp(2, 0, -1) == 0


@pytest.mark.parametrize(
    "text,expected",
    [
        ("12.34", 1234),
        (".99", 99),
        ("  7 ", 700),
        ("0.005", 0),
        ("0.015", 2),
        ("", 0),
        (None, 0),
        ("abc", 0),
        ("NaN", 0),
    ],
)
def test_parse_money_to_cents(text, expected):
    assert parse_money_to_cents(text) == expected


def test_selections_reject_non_positive_values():
    with pytest.raises(ValueError):
        QuantitySelection(item_id="A", quantity=0)
    with pytest.raises(ValueError):
        AmountSelection(item_id="A", amount_cents=-5)
    with pytest.raises(ValueError):
        QuantitySelection(item_id="  ", quantity=1)
    with pytest.raises(ValueError):
        QuantitySelection(item_id="A", quantity=True)


def test_selection_from_dict_and_sort_order():
    parsed = selection_from_dict({"type": "amount", "itemId": "B", "amountCents": 250})
    assert parsed == AmountSelection(item_id="B", amount_cents=250)

    ordered = sort_selections(
        [
            QuantitySelection(item_id="B", quantity=1),
            AmountSelection(item_id="A", amount_cents=10),
            QuantitySelection(item_id="A", quantity=2),
        ]
    )
    assert [sel.to_dict() for sel in ordered] == [
        {"type": "amount", "itemId": "A", "amountCents": 10},
        {"type": "quantity", "itemId": "A", "quantity": 2},
        {"type": "quantity", "itemId": "B", "quantity": 1},
    ]

    with pytest.raises(ValueError):
        selection_from_dict({"type": "percent", "itemId": "A"})
