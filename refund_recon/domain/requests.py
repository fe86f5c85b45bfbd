"""Canonical refund requests and their idempotency keys.

Two logically identical submissions (a retried click, fields in another
order, an omitted default) must produce the same selections and the same key.
Selections are therefore merged per item, sorted, and hashed together with the
options that change the money movement. Free-text ``notes`` never affect the
key.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping

from refund_recon.domain.errors import RefundValidationError
from refund_recon.domain.money import (
    AmountSelection,
    QuantitySelection,
    Selection,
    clamp,
    prorate_cents,
    sort_selections,
)
from refund_recon.domain.readers import OrderLine, OrderView
from refund_recon.ledger.canonical import sha256_hex

IDEMPOTENCY_KEY_PREFIX = "refund:v2:"

RefundReason = Literal["requested_by_customer", "duplicate", "fraudulent", "other"]
GATEWAY_REASONS = {"requested_by_customer", "duplicate", "fraudulent"}


@dataclass(frozen=True)
class RefundOptions:
    reason: RefundReason | None = None
    restocking_fee_cents: int = 0
    refund_shipping_cents: int = 0
    notes: str | None = None
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        if self.restocking_fee_cents < 0:
            raise RefundValidationError(
                "restockingFeeCents must be >= 0",
                field_errors={"restockingFeeCents": ["must be >= 0"]},
            )
        if self.refund_shipping_cents < 0:
            raise RefundValidationError(
                "refundShippingCents must be >= 0",
                field_errors={"refundShippingCents": ["must be >= 0"]},
            )

    def key_fields(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "restockingFeeCents": self.restocking_fee_cents,
            "refundShippingCents": self.refund_shipping_cents,
        }

    @property
    def gateway_reason(self) -> str | None:
        # The gateway has no "other"; it stays on the local record only.
        return self.reason if self.reason in GATEWAY_REASONS else None


def build_idempotency_key(order_id: str, selections: Iterable[Selection], options: RefundOptions | None = None) -> str:
    payload = {
        "orderId": order_id,
        "selections": [sel.to_dict() for sel in sort_selections(list(selections))],
        "options": (options or RefundOptions()).key_fields(),
    }
    return sha256_hex(payload, prefix=IDEMPOTENCY_KEY_PREFIX)


def normalize_selections(order: OrderView, selections: Iterable[Selection]) -> list[Selection]:
    """Merge API selections into one canonical selection per item."""
    lines = order.lines_by_id()
    quantities: dict[str, int] = OrderedDict()
    amounts: dict[str, int] = OrderedDict()
    unknown: list[str] = []

    for sel in selections:
        if sel.item_id not in lines:
            unknown.append(sel.item_id)
            continue
        if isinstance(sel, AmountSelection):
            amounts[sel.item_id] = amounts.get(sel.item_id, 0) + sel.amount_cents
        else:
            quantities[sel.item_id] = quantities.get(sel.item_id, 0) + sel.quantity

    if unknown:
        raise RefundValidationError(
            f"Item not found: {', '.join(sorted(set(unknown)))}",
            order_id=order.order_id,
            field_errors={"selections": [f"unknown itemId {item_id}" for item_id in sorted(set(unknown))]},
        )

    merged: list[Selection] = [AmountSelection(item_id=k, amount_cents=v) for k, v in amounts.items()]
    merged.extend(
        QuantitySelection(item_id=k, quantity=v) for k, v in quantities.items() if k not in amounts
    )
    return sort_selections(merged)


def normalize_staff_input(
    order: OrderView,
    quantities_by_item: Mapping[str, int] | None = None,
    amounts_by_item: Mapping[str, int] | None = None,
    remaining_qty_by_item: Mapping[str, int] | None = None,
) -> list[Selection]:
    """Convert the staff form state into canonical selections.

    Per line, a positive override amount wins over a chosen quantity. Chosen
    quantities are clamped to what remains; zeros are dropped rather than
    encoded as empty selections.
    """
    quantities_by_item = quantities_by_item or {}
    amounts_by_item = amounts_by_item or {}
    remaining_qty_by_item = remaining_qty_by_item or {}

    out: list[Selection] = []
    for line in order.lines:
        amount = int(amounts_by_item.get(line.item_id) or 0)
        if amount > 0:
            out.append(AmountSelection(item_id=line.item_id, amount_cents=amount))
            continue

        remaining = remaining_qty_by_item.get(line.item_id, line.quantity)
        qty = clamp(int(quantities_by_item.get(line.item_id) or 0), 0, remaining)
        if qty > 0:
            out.append(QuantitySelection(item_id=line.item_id, quantity=qty))
    return sort_selections(out)


def selection_cents(line: OrderLine, selection: Selection) -> int:
    if isinstance(selection, AmountSelection):
        return selection.amount_cents
    return prorate_cents(line.amount_total_cents, selection.quantity, line.quantity)


def items_subtotal_cents(order: OrderView, selections: Iterable[Selection]) -> int:
    lines = order.lines_by_id()
    return sum(selection_cents(lines[sel.item_id], sel) for sel in selections if sel.item_id in lines)


def refund_total_cents(order: OrderView, selections: Iterable[Selection], options: RefundOptions) -> int:
    """Items subtotal plus shipping minus the restocking fee."""
    return (
        items_subtotal_cents(order, selections)
        + max(0, options.refund_shipping_cents)
        - max(0, options.restocking_fee_cents)
    )


def selection_snapshot(line: OrderLine, selection: Selection) -> dict[str, Any]:
    """Selection as persisted on the refund record, with the line prices it was computed from."""
    data = selection.to_dict()
    data["unitAmount"] = line.unit_amount_cents
    data["amountTotal"] = line.amount_total_cents
    return data
