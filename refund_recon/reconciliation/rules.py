from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from refund_recon.domain.money import ROUNDING_TOLERANCE_CENTS
from refund_recon.domain.readers import OrderView, RefundView, filter_counted
from refund_recon.domain.attribution import resolve
from refund_recon.ledger.store import RefundLedgerStore


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str

    def to_dict(self) -> dict:
        return asdict(self)


def check_refunds_within_total(order: OrderView, counted: list[RefundView]) -> ReconciliationResult:
    refunded = sum(refund.amount_cents for refund in counted)
    return ReconciliationResult(
        rule="refunds_within_order_total",
        passed=refunded <= order.total_cents,
        detail=f"refunded={refunded}, total={order.total_cents}",
    )


def check_item_quantity_ceiling(order: OrderView, counted: list[RefundView]) -> ReconciliationResult:
    attribution = resolve(order, counted)
    for line in order.lines:
        refunded = attribution.refunded_qty.get(line.item_id, 0)
        if refunded > line.quantity:
            return ReconciliationResult(
                rule="item_quantity_ceiling",
                passed=False,
                detail=f"item={line.item_id} refunded_qty={refunded} purchased={line.quantity}",
            )
    return ReconciliationResult(rule="item_quantity_ceiling", passed=True, detail="ok")


def check_item_amount_ceiling(order: OrderView, counted: list[RefundView]) -> ReconciliationResult:
    attribution = resolve(order, counted)
    for line in order.lines:
        refunded = attribution.refunded_amount_cents.get(line.item_id, 0)
        if refunded > line.amount_total_cents + ROUNDING_TOLERANCE_CENTS:
            return ReconciliationResult(
                rule="item_amount_ceiling",
                passed=False,
                detail=f"item={line.item_id} refunded_cents={refunded} line_total={line.amount_total_cents}",
            )
    return ReconciliationResult(rule="item_amount_ceiling", passed=True, detail="ok")


def check_shipping_ceiling(order: OrderView, counted: list[RefundView]) -> ReconciliationResult:
    refunded = sum(refund.refund_shipping_cents for refund in counted)
    return ReconciliationResult(
        rule="shipping_ceiling",
        passed=refunded <= order.shipping_total_cents,
        detail=f"shipping_refunded={refunded}, shipping_charged={order.shipping_total_cents}",
    )


def check_counter_matches_log(order: OrderView, counted: list[RefundView]) -> ReconciliationResult:
    refunded = sum(refund.amount_cents for refund in counted)
    return ReconciliationResult(
        rule="counter_matches_log",
        passed=refunded == order.refunded_total_cents,
        detail=f"log={refunded}, counter={order.refunded_total_cents}",
    )


def check_order_invariants(
    order: OrderView,
    refunds: Iterable[RefundView],
    include_pending: bool = False,
) -> list[ReconciliationResult]:
    counted = filter_counted(refunds, include_pending)
    return [
        check_refunds_within_total(order, counted),
        check_item_quantity_ceiling(order, counted),
        check_item_amount_ceiling(order, counted),
        check_shipping_ceiling(order, counted),
        check_counter_matches_log(order, counted),
    ]


def find_partially_applied_attempts(session: Session, order_id: str | None = None) -> list[dict]:
    """Attempts where the gateway may have moved money without a local refund record."""
    attempts = RefundLedgerStore(session).list_open_attempts(
        order_id=order_id,
        states=("gateway_called", "partially_applied"),
    )
    return [
        {
            "idempotencyKey": attempt.idempotency_key,
            "orderId": attempt.order_id,
            "state": attempt.state,
            "amountCents": attempt.amount_cents,
            "gatewayRefundId": attempt.gateway_refund_id,
            "gatewayStatus": attempt.gateway_status,
            "refundId": attempt.refund_id,
            "error": attempt.error,
        }
        for attempt in attempts
    ]
