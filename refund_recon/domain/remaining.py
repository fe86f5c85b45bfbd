from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from refund_recon.domain.attribution import Attribution, resolve
from refund_recon.domain.readers import OrderView, RefundView, filter_counted


@dataclass(frozen=True)
class Remaining:
    order_remaining_cents: int
    refunded_cents_from_log: int
    shipping_original_cents: int
    shipping_refunded_cents: int
    shipping_remaining_cents: int

    @property
    def fully_refunded(self) -> bool:
        return self.order_remaining_cents <= 0


def remaining(order: OrderView, counted_refunds: Iterable[RefundView]) -> Remaining:
    """Order-level and shipping remaining for the given counted refunds.

    The refund log is the source of truth. The order's denormalized counter is
    consulted only when the log sums to zero, which covers orders adjusted
    out-of-band before any refund record existed.
    """
    refunds = list(counted_refunds)
    refunded_from_log = sum(refund.amount_cents for refund in refunds)

    if refunded_from_log > 0:
        order_remaining = max(0, order.total_cents - refunded_from_log)
    else:
        order_remaining = max(0, order.total_cents - order.refunded_total_cents)

    shipping_refunded = sum(refund.refund_shipping_cents for refund in refunds)
    return Remaining(
        order_remaining_cents=order_remaining,
        refunded_cents_from_log=refunded_from_log,
        shipping_original_cents=order.shipping_total_cents,
        shipping_refunded_cents=shipping_refunded,
        shipping_remaining_cents=max(0, order.shipping_total_cents - shipping_refunded),
    )


@dataclass(frozen=True)
class RefundState:
    order: OrderView
    include_pending: bool
    remaining: Remaining
    attribution: Attribution

    def to_response(self) -> dict:
        attribution = self.attribution
        remaining_qty = dict(sorted(attribution.remaining_qty.items()))
        return {
            "orderId": self.order.order_id,
            "includePending": self.include_pending,
            "orderRemainingCents": self.remaining.order_remaining_cents,
            "remainingCents": self.remaining.order_remaining_cents,
            "perItemRemainingQty": remaining_qty,
            "byItemId": remaining_qty,
            "perItemRefundedQty": dict(sorted(attribution.refunded_qty.items())),
            "perItemRefundedAmountCents": dict(sorted(attribution.refunded_amount_cents.items())),
            "fullyRefundedItemIds": sorted(attribution.fully_refunded_item_ids),
            "shipping": {
                "originalCents": self.remaining.shipping_original_cents,
                "refundedCents": self.remaining.shipping_refunded_cents,
                "remainingCents": self.remaining.shipping_remaining_cents,
            },
        }


def compute_refund_state(order: OrderView, refunds: Iterable[RefundView], include_pending: bool) -> RefundState:
    """Run the resolver and the calculator over the same counted subset."""
    counted = filter_counted(refunds, include_pending)
    return RefundState(
        order=order,
        include_pending=include_pending,
        remaining=remaining(order, counted),
        attribution=resolve(order, counted),
    )
