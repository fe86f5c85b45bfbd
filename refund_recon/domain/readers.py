"""Turn raw order and refund documents into normalized, read-only views.

The documents come from the store as plain mappings (``OrderModel.as_document``
and ``RefundModel.as_document``), and historical refund records carry several
selection shapes. Everything past this module sees only ``OrderView`` and
``RefundView``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from refund_recon.domain.money import (
    AmountSelection,
    QuantitySelection,
    Selection,
    round_half_even_div,
)

logger = logging.getLogger(__name__)

COUNTED_STATUSES = ("succeeded",)
COUNTED_STATUSES_WITH_PENDING = ("succeeded", "pending")
REFUND_STATUSES = ("succeeded", "pending", "failed", "canceled")


def counted_statuses(include_pending: bool) -> tuple[str, ...]:
    return COUNTED_STATUSES_WITH_PENDING if include_pending else COUNTED_STATUSES


@dataclass(frozen=True)
class OrderLine:
    item_id: str
    name: str
    quantity: int
    unit_amount_cents: int
    amount_total_cents: int
    has_unit_amount: bool = True
    has_amount_total: bool = True


@dataclass(frozen=True)
class OrderView:
    order_id: str
    order_number: str | None
    total_cents: int
    currency: str
    refunded_total_cents: int
    shipping_total_cents: int
    status: str
    lines: tuple[OrderLine, ...] = ()

    def line(self, item_id: str) -> OrderLine | None:
        for line in self.lines:
            if line.item_id == item_id:
                return line
        return None

    def lines_by_id(self) -> dict[str, OrderLine]:
        return {line.item_id: line for line in self.lines}


@dataclass(frozen=True)
class RefundView:
    refund_id: str
    order_id: str
    amount_cents: int
    status: str
    selections: tuple[Selection, ...] = ()
    # Every item id the record mentions, including bare ``{itemId}`` entries
    # that carry neither a quantity nor an amount.
    item_refs: tuple[str, ...] = ()
    refund_shipping_cents: int = 0
    restocking_fee_cents: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    legacy_shape: bool = False

    @property
    def has_amount_selection(self) -> bool:
        return any(isinstance(sel, AmountSelection) for sel in self.selections)

    @property
    def item_portion_cents(self) -> int:
        """Cents taken out of order lines: the amount without shipping, before the restocking fee."""
        return max(0, self.amount_cents - self.refund_shipping_cents + self.restocking_fee_cents)


def to_int_cents(value: Any) -> int | None:
    """Coerce a stored numeric value to an int, truncating toward zero.

    Legacy documents sometimes hold JSON numbers with a fractional part; they
    are truncated the same way the old readers did, via ``Decimal`` so no
    binary float arithmetic is involved.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return int(number)


def _get(doc: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in doc and doc[key] is not None:
            return doc[key]
    return None


def read_order_line(raw: Mapping[str, Any]) -> OrderLine | None:
    item_id = raw.get("id")
    if item_id is None:
        return None
    item_id = str(item_id).strip()
    if not item_id:
        return None

    quantity = to_int_cents(raw.get("quantity"))
    if quantity is None or quantity < 1:
        quantity = 1

    unit_amount = to_int_cents(_get(raw, "unitAmount", "unitAmountCents"))
    amount_total = to_int_cents(_get(raw, "amountTotal", "amountTotalCents"))

    has_unit = unit_amount is not None
    has_total = amount_total is not None
    if unit_amount is None:
        unit_amount = round_half_even_div(amount_total or 0, quantity)
    if amount_total is None:
        amount_total = unit_amount * quantity

    return OrderLine(
        item_id=item_id,
        name=str(raw.get("nameSnapshot") or "Item"),
        quantity=quantity,
        unit_amount_cents=unit_amount,
        amount_total_cents=amount_total,
        has_unit_amount=has_unit,
        has_amount_total=has_total,
    )


def read_order(doc: Mapping[str, Any]) -> OrderView:
    lines: list[OrderLine] = []
    seen: set[str] = set()
    for raw in doc.get("items") or []:
        if not isinstance(raw, Mapping):
            continue
        line = read_order_line(raw)
        if line is None:
            continue
        if line.item_id in seen:
            logger.warning("duplicate item id in order: order_id=%s item_id=%s", doc.get("id"), line.item_id)
            continue
        seen.add(line.item_id)
        lines.append(line)

    amounts = doc.get("amounts") or {}
    shipping = to_int_cents(amounts.get("shippingTotalCents")) if isinstance(amounts, Mapping) else None

    return OrderView(
        order_id=str(doc["id"]),
        order_number=doc.get("orderNumber"),
        total_cents=max(0, to_int_cents(_get(doc, "totalCents", "total")) or 0),
        currency=str(doc.get("currency") or "usd"),
        refunded_total_cents=max(0, to_int_cents(doc.get("refundedTotalCents")) or 0),
        shipping_total_cents=max(0, shipping or 0),
        status=str(doc.get("status") or "paid"),
        lines=tuple(lines),
    )


def read_selection(raw: Any) -> tuple[Selection | None, str | None, bool]:
    """Parse one stored selection.

    Returns ``(selection, item_id, legacy)``. ``selection`` is ``None`` for
    entries naming an item without a usable quantity or amount; ``item_id`` is
    ``None`` when the entry names no item at all.
    """
    if not isinstance(raw, Mapping):
        return None, None, True
    item_id = raw.get("itemId")
    if not isinstance(item_id, str) or not item_id.strip():
        return None, None, True
    item_id = item_id.strip()

    tag = raw.get("type")
    legacy = tag is None
    if tag is None:
        tag = raw.get("blockType")

    amount = to_int_cents(_get(raw, "amountCents", "amount"))
    quantity = to_int_cents(raw.get("quantity"))

    if tag == "amount" or (tag is None and amount is not None and quantity is None):
        if amount is not None and amount > 0:
            return AmountSelection(item_id=item_id, amount_cents=amount), item_id, legacy
        return None, item_id, legacy
    if tag == "quantity" or (tag is None and quantity is not None):
        if quantity is not None and quantity > 0:
            return QuantitySelection(item_id=item_id, quantity=quantity), item_id, legacy
        return None, item_id, legacy
    return None, item_id, True


def read_refund(doc: Mapping[str, Any]) -> RefundView:
    selections: list[Selection] = []
    item_refs: list[str] = []
    legacy_shape = False
    for raw in doc.get("selections") or []:
        selection, item_id, legacy = read_selection(raw)
        legacy_shape = legacy_shape or legacy
        if item_id is not None:
            item_refs.append(item_id)
        if selection is not None:
            selections.append(selection)

    fees = doc.get("fees") or {}
    if not isinstance(fees, Mapping):
        fees = {}

    order_ref = doc.get("order")
    if isinstance(order_ref, Mapping):
        order_ref = order_ref.get("id")

    status = str(doc.get("status") or "pending")
    if status not in REFUND_STATUSES:
        status = "pending"

    return RefundView(
        refund_id=str(doc.get("id")),
        order_id=str(order_ref or doc.get("orderId") or ""),
        amount_cents=max(0, to_int_cents(_get(doc, "amountCents", "amount")) or 0),
        status=status,
        selections=tuple(selections),
        item_refs=tuple(item_refs),
        refund_shipping_cents=max(0, to_int_cents(fees.get("refundShippingCents")) or 0),
        restocking_fee_cents=max(0, to_int_cents(fees.get("restockingFeeCents")) or 0),
        created_at=doc.get("createdAt"),
        updated_at=doc.get("updatedAt"),
        legacy_shape=legacy_shape,
    )


def read_refunds(docs: Iterable[Mapping[str, Any]]) -> list[RefundView]:
    return [read_refund(doc) for doc in docs]


def filter_counted(refunds: Iterable[RefundView], include_pending: bool) -> list[RefundView]:
    statuses = counted_statuses(include_pending)
    return [refund for refund in refunds if refund.status in statuses]


@dataclass
class OrderSnapshot:
    """An order together with every refund record the store holds for it.

    ``in_flight`` holds claimed attempts with no refund record yet, read as
    pending refunds.
    """

    order: OrderView
    refunds: list[RefundView] = field(default_factory=list)
    in_flight: list[RefundView] = field(default_factory=list)

    def counted(self, include_pending: bool) -> list[RefundView]:
        return filter_counted(self.refunds, include_pending)
