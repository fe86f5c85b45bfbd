"""Attribute counted refund records to order lines.

Per record, in precedence order:

1. explicit selections (quantity -> refunded quantity, amount -> refunded amount);
2. fallback A: the record names a single item and carries no per-line amount,
   so its item portion goes to that item, capped at the line total;
3. fallback B: the record names no item at all, so its item portion is matched
   against line totals (then unit prices) within one cent. Only a unique
   match is attributed; ties and misses are logged and left unattributed.

The item portion of a record is ``amount_cents`` less refunded shipping plus
the restocking fee withheld from it.

Attribution is best effort. Order-level remaining never depends on it.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from refund_recon.domain.money import (
    ROUNDING_TOLERANCE_CENTS,
    AmountSelection,
    QuantitySelection,
    prorate_cents,
    within_tolerance,
)
from refund_recon.domain.readers import OrderLine, OrderView, RefundView

logger = logging.getLogger(__name__)


@dataclass
class Attribution:
    remaining_qty: dict[str, int] = field(default_factory=dict)
    refunded_qty: dict[str, int] = field(default_factory=dict)
    refunded_amount_cents: dict[str, int] = field(default_factory=dict)
    fully_refunded_item_ids: set[str] = field(default_factory=set)
    unattributed_refund_ids: list[str] = field(default_factory=list)

    def refunded_line_cents(self, line: OrderLine) -> int:
        """Cents already taken out of ``line`` by amount or by quantity, whichever is larger."""
        by_amount = self.refunded_amount_cents.get(line.item_id, 0)
        by_qty = prorate_cents(
            line.amount_total_cents,
            min(self.refunded_qty.get(line.item_id, 0), line.quantity),
            line.quantity,
        )
        return max(by_amount, by_qty)

    def unrefunded_line_cents(self, line: OrderLine) -> int:
        return max(0, line.amount_total_cents - self.refunded_line_cents(line))

    def to_dict(self) -> dict:
        return {
            "remainingQty": dict(sorted(self.remaining_qty.items())),
            "refundedQty": dict(sorted(self.refunded_qty.items())),
            "refundedAmountCents": dict(sorted(self.refunded_amount_cents.items())),
            "fullyRefundedItemIds": sorted(self.fully_refunded_item_ids),
            "unattributedRefundIds": list(self.unattributed_refund_ids),
        }


def match_line_by_amount(lines: Iterable[OrderLine], amount_cents: int) -> tuple[OrderLine | None, int]:
    """Return the unique line whose total (or, failing that, unit price) equals ``amount_cents``.

    The second element is the number of candidates on the tier that decided
    the outcome, so callers can tell "no match" from "ambiguous".
    """
    lines = list(lines)
    for price in (lambda line: line.amount_total_cents, lambda line: line.unit_amount_cents):
        matches = [line for line in lines if within_tolerance(price(line), amount_cents)]
        if matches:
            return (matches[0] if len(matches) == 1 else None), len(matches)
    return None, 0


def _attribute_record(
    order: OrderView,
    refund: RefundView,
    refunded_qty: dict[str, int],
    refunded_amount: dict[str, int],
) -> bool:
    for sel in refund.selections:
        if isinstance(sel, QuantitySelection):
            refunded_qty[sel.item_id] += sel.quantity
        elif isinstance(sel, AmountSelection):
            refunded_amount[sel.item_id] += sel.amount_cents

    item_cents = refund.item_portion_cents
    if item_cents <= 0:
        return True

    distinct_items = set(refund.item_refs)
    if len(distinct_items) == 1 and not refund.has_amount_selection:
        (item_id,) = distinct_items
        line = order.line(item_id)
        if line is not None:
            item_cents = min(item_cents, line.amount_total_cents)
        refunded_amount[item_id] += item_cents
        return True

    if not refund.item_refs:
        line, candidates = match_line_by_amount(order.lines, item_cents)
        if line is None:
            logger.warning(
                "refund attribution skipped: order_id=%s refund_id=%s amount_cents=%s candidates=%s",
                order.order_id,
                refund.refund_id,
                item_cents,
                candidates,
            )
            return False
        refunded_amount[line.item_id] += item_cents
    return True


def resolve(order: OrderView, counted_refunds: Iterable[RefundView]) -> Attribution:
    refunded_qty: dict[str, int] = defaultdict(int)
    refunded_amount: dict[str, int] = defaultdict(int)
    unattributed: list[str] = []

    for refund in counted_refunds:
        if not _attribute_record(order, refund, refunded_qty, refunded_amount):
            unattributed.append(refund.refund_id)

    result = Attribution(
        refunded_qty={k: v for k, v in refunded_qty.items() if v > 0},
        refunded_amount_cents={k: v for k, v in refunded_amount.items() if v > 0},
        unattributed_refund_ids=unattributed,
    )

    for line in order.lines:
        already = result.refunded_qty.get(line.item_id, 0)
        result.remaining_qty[line.item_id] = max(0, line.quantity - already)
        if is_fully_refunded(line, result):
            result.fully_refunded_item_ids.add(line.item_id)

    return result


def is_fully_refunded(line: OrderLine, attribution: Attribution) -> bool:
    qty = attribution.refunded_qty.get(line.item_id)
    amount = attribution.refunded_amount_cents.get(line.item_id)

    if qty is not None:
        if attribution.remaining_qty.get(line.item_id) == 0 or qty >= line.quantity:
            return True
    if amount is not None and line.amount_total_cents > 0:
        if amount >= line.amount_total_cents - ROUNDING_TOLERANCE_CENTS:
            return True
    return False
