from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from refund_recon.api.schemas import RecomputeIn, RefundCreateIn, RefundPreviewIn
from refund_recon.core.security import Actor, get_actor, require_staff
from refund_recon.domain.errors import OrderNotFoundError
from refund_recon.domain.money import parse_money_to_cents
from refund_recon.domain.remaining import compute_refund_state
from refund_recon.domain.requests import (
    build_idempotency_key,
    items_subtotal_cents,
    normalize_staff_input,
    refund_total_cents,
)
from refund_recon.gateway.payments import PaymentGateway, get_payment_gateway
from refund_recon.ledger.store import RefundLedgerStore
from refund_recon.persistence.pg import get_session
from refund_recon.reconciliation.rules import check_order_invariants, find_partially_applied_attempts
from refund_recon.services.orchestrator import RefundService
from refund_recon.services.recompute import recompute_refund_state

router = APIRouter(tags=["refunds"])


def _load_snapshot(session: Session, order_id: str):
    loaded = RefundLedgerStore(session).load_snapshot(order_id)
    if loaded is None:
        raise OrderNotFoundError(order_id)
    return loaded


@router.get("/refunds/remaining")
def get_remaining(
    order_id: str = Query(alias="orderId", min_length=1),
    include_pending: bool = Query(default=False, alias="includePending"),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_staff(actor, order_id)
    _, snapshot = _load_snapshot(session, order_id)
    state = compute_refund_state(snapshot.order, snapshot.refunds, include_pending)
    return {"ok": True, **state.to_response()}


@router.get("/refunds")
def list_refunds(
    order_id: str = Query(alias="orderId", min_length=1),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_staff(actor, order_id)
    store = RefundLedgerStore(session)
    if store.get_order(order_id) is None:
        raise OrderNotFoundError(order_id)
    rows = store.list_refunds(order_id)
    return {
        "ok": True,
        "orderId": order_id,
        "count": len(rows),
        "refunds": [
            {
                "id": row.id,
                "gatewayRefundId": row.gateway_refund_id,
                "amountCents": row.amount_cents,
                "status": row.status,
                "reason": row.reason,
                "selections": row.selections,
                "fees": row.fees,
                "notes": row.notes,
                "createdAt": row.created_at.isoformat().replace("+00:00", "Z"),
            }
            for row in rows
        ],
    }


@router.post("/refunds")
def create_refund(
    payload: RefundCreateIn,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    require_staff(actor, payload.order_id)
    result = RefundService(session, gateway=gateway).create_refund(
        payload.order_id,
        payload.to_selections(),
        payload.to_options(),
    )
    return result.to_response()


@router.post("/refunds/preview")
def preview_refund(
    payload: RefundPreviewIn,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_staff(actor, payload.order_id)
    _, snapshot = _load_snapshot(session, payload.order_id)
    state = compute_refund_state(snapshot.order, snapshot.refunds, payload.include_pending)

    amounts = {item_id: parse_money_to_cents(text) for item_id, text in payload.amounts_by_item_id.items()}
    amounts.update(payload.amount_cents_by_item_id)
    selections = normalize_staff_input(
        snapshot.order,
        quantities_by_item=payload.quantities_by_item_id,
        amounts_by_item=amounts,
        remaining_qty_by_item=state.attribution.remaining_qty,
    )
    options = payload.to_options()
    total = refund_total_cents(snapshot.order, selections, options)
    return {
        "ok": True,
        "orderId": payload.order_id,
        "selections": [sel.to_dict() for sel in selections],
        "itemsSubtotalCents": items_subtotal_cents(snapshot.order, selections),
        "previewCents": max(0, total),
        "withinRemaining": 0 < total <= state.remaining.order_remaining_cents,
        "idempotencyKey": build_idempotency_key(payload.order_id, selections, options),
        "remaining": state.to_response(),
    }


@router.post("/refunds/recompute")
def recompute(
    payload: RecomputeIn,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_staff(actor, payload.order_id)
    if RefundLedgerStore(session).get_order(payload.order_id) is None:
        raise OrderNotFoundError(payload.order_id)
    summary = recompute_refund_state(session, payload.order_id, include_pending=payload.include_pending)
    return {"ok": summary is not None, "orderId": payload.order_id, "summary": summary}


@router.get("/refunds/reconcile")
def reconcile(
    order_id: str | None = Query(default=None, alias="orderId"),
    include_pending: bool = Query(default=False, alias="includePending"),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_staff(actor, order_id)
    body: dict = {"ok": True, "orderId": order_id}
    if order_id:
        _, snapshot = _load_snapshot(session, order_id)
        results = check_order_invariants(snapshot.order, snapshot.refunds, include_pending=include_pending)
        body["checks"] = [result.to_dict() for result in results]
        body["ok"] = all(result.passed for result in results)
    attempts = find_partially_applied_attempts(session, order_id=order_id)
    body["partiallyAppliedAttempts"] = attempts
    body["ok"] = body["ok"] and not attempts
    return body
