"""Integer-cent money helpers and the refund selection union.

All arithmetic here is on ``int`` cents. The only division in the engine is
proration of a line total across a partial quantity; it goes through
``prorate_cents`` which rounds half-to-even at the cent boundary so totals are
reproducible across runs and platforms.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Union

ROUNDING_TOLERANCE_CENTS = 1


def clamp(value: int, low: int, high: int) -> int:
    if high < low:
        return low
    return max(low, min(high, value))


def round_half_even_div(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    quotient = Decimal(numerator) / Decimal(denominator)
    return int(quotient.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def prorate_cents(line_total_cents: int, quantity: int, purchased_quantity: int) -> int:
    """Share of ``line_total_cents`` for ``quantity`` of ``purchased_quantity`` units.

    Rounds half-to-even: 1001 cents over 2 units gives 500 for one unit, and
    1003 over 2 gives 502.
    """
    return round_half_even_div(line_total_cents * quantity, max(purchased_quantity, 1))


def within_tolerance(a: int, b: int, tolerance: int = ROUNDING_TOLERANCE_CENTS) -> bool:
    return abs(a - b) <= tolerance


def parse_money_to_cents(text: str | None) -> int:
    """Parse a major-unit string such as ``"12.34"`` or ``".99"`` into cents.

    Empty or unparseable input yields 0, matching what the staff form treats as
    "no amount entered".
    """
    raw = (text or "").strip()
    if not raw:
        return 0
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return 0
    if not value.is_finite():
        return 0
    return int((value * 100).quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def _require_item_id(item_id: Any) -> str:
    if not isinstance(item_id, str) or not item_id.strip():
        raise ValueError("selection itemId must be a non-empty string")
    return item_id.strip()


def _require_positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer")
    return value


@dataclass(frozen=True)
class QuantitySelection:
    """Refund ``quantity`` units of an item; the amount is prorated from the line."""

    item_id: str
    quantity: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "item_id", _require_item_id(self.item_id))
        _require_positive_int(self.quantity, "quantity")

    @property
    def type(self) -> str:
        return "quantity"

    def sort_key(self) -> tuple[str, int, int]:
        return (self.item_id, self.quantity, 0)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "quantity", "itemId": self.item_id, "quantity": self.quantity}


@dataclass(frozen=True)
class AmountSelection:
    """Refund an explicit amount against an item."""

    item_id: str
    amount_cents: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "item_id", _require_item_id(self.item_id))
        _require_positive_int(self.amount_cents, "amountCents")

    @property
    def type(self) -> str:
        return "amount"

    def sort_key(self) -> tuple[str, int, int]:
        return (self.item_id, 0, self.amount_cents)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "amount", "itemId": self.item_id, "amountCents": self.amount_cents}


Selection = Union[QuantitySelection, AmountSelection]


def selection_from_dict(data: dict[str, Any]) -> Selection:
    """Build a selection from its canonical ``{"type": ...}`` form."""
    kind = data.get("type")
    if kind == "quantity":
        return QuantitySelection(item_id=data.get("itemId"), quantity=data.get("quantity"))
    if kind == "amount":
        return AmountSelection(item_id=data.get("itemId"), amount_cents=data.get("amountCents"))
    raise ValueError(f"unknown selection type: {kind!r}")


def sort_selections(selections: list[Selection]) -> list[Selection]:
    return sorted(selections, key=lambda sel: sel.sort_key())
