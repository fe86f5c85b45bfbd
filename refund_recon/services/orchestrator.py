"""Refund creation.

Requested -> Validated -> GatewayCalled -> Persisted -> RecomputeAttempted -> Done

Validation failures exit as ``Rejected`` (a ``RefundError`` is raised before
anything is written). From ``GatewayCalled`` onward money may have moved, so
any local failure leaves the attempt row in ``partially_applied`` for the
reconciliation scan instead of pretending nothing happened.

Side effects are ordered: gateway call, then the local refund record, then
recompute. The session is committed between steps so each state is durable
before the next external effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from refund_recon.domain.attribution import Attribution
from refund_recon.domain.errors import (
    ConcurrentRefundError,
    ExceedsRefundableError,
    FullyRefundedError,
    GatewayError,
    GatewaySucceededLocalPersistFailed,
    OrderNotFoundError,
    RefundInFlightError,
    RefundValidationError,
)
from refund_recon.domain.money import ROUNDING_TOLERANCE_CENTS, AmountSelection, Selection
from refund_recon.domain.readers import OrderView
from refund_recon.domain.remaining import RefundState, compute_refund_state
from refund_recon.domain.requests import (
    RefundOptions,
    build_idempotency_key,
    normalize_selections,
    refund_total_cents,
    selection_cents,
    selection_snapshot,
)
from refund_recon.gateway.payments import GatewayRefundRequest, PaymentGateway, build_payment_gateway
from refund_recon.ledger.canonical import canonical_json
from refund_recon.ledger.store import RefundLedgerStore
from refund_recon.persistence.models import RefundAttemptModel, RefundModel
from refund_recon.services.recompute import recompute_refund_state

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    gateway_refund_id: str
    status: str
    amount_cents: int
    local_refund_id: str
    idempotency_key: str
    replayed: bool = False
    reconciliation_needed: bool = False

    def to_response(self) -> dict[str, Any]:
        return {
            "ok": True,
            "gatewayRefundId": self.gateway_refund_id,
            "status": self.status,
            "amountCents": self.amount_cents,
            "refundId": self.local_refund_id,
            "idempotencyKey": self.idempotency_key,
            "replayed": self.replayed,
            "reconciliationNeeded": self.reconciliation_needed,
        }


def check_item_ceilings(order: OrderView, attribution: Attribution, selections: Iterable[Selection]) -> None:
    lines = order.lines_by_id()
    for sel in selections:
        line = lines[sel.item_id]
        requested = selection_cents(line, sel)
        unrefunded = attribution.unrefunded_line_cents(line)

        if sel.item_id in attribution.fully_refunded_item_ids:
            raise ExceedsRefundableError(
                order.order_id,
                requested_cents=requested,
                remaining_cents=0,
                message=f"Item {sel.item_id} is already fully refunded",
                itemId=sel.item_id,
            )

        if isinstance(sel, AmountSelection):
            if sel.amount_cents > unrefunded + ROUNDING_TOLERANCE_CENTS:
                raise ExceedsRefundableError(
                    order.order_id,
                    requested_cents=sel.amount_cents,
                    remaining_cents=unrefunded,
                    message=f"Requested amount exceeds unrefunded amount for item {sel.item_id}",
                    itemId=sel.item_id,
                )
            continue

        remaining_qty = attribution.remaining_qty.get(sel.item_id, line.quantity)
        if sel.quantity > remaining_qty:
            raise ExceedsRefundableError(
                order.order_id,
                requested_cents=requested,
                remaining_cents=unrefunded,
                message=(
                    f"Over-refund detected for item {sel.item_id}. "
                    f"Remaining refundable qty: {remaining_qty}, requested: {sel.quantity}"
                ),
                itemId=sel.item_id,
                requestedQty=sel.quantity,
                remainingQty=remaining_qty,
            )
        if requested > unrefunded + ROUNDING_TOLERANCE_CENTS:
            raise ExceedsRefundableError(
                order.order_id,
                requested_cents=requested,
                remaining_cents=unrefunded,
                message=f"Requested quantity exceeds unrefunded amount for item {sel.item_id}",
                itemId=sel.item_id,
            )


def validate_refund(
    state: RefundState,
    selections: list[Selection],
    options: RefundOptions,
) -> int:
    """Run the eligibility checks in order and return the amount to refund."""
    order = state.order
    if state.remaining.fully_refunded:
        raise FullyRefundedError(order.order_id)

    if not selections and options.refund_shipping_cents <= 0:
        raise RefundValidationError(
            "At least one selection is required",
            order_id=order.order_id,
            field_errors={"selections": ["At least one selection required"]},
        )

    shipping_remaining = state.remaining.shipping_remaining_cents
    if options.refund_shipping_cents > shipping_remaining:
        raise ExceedsRefundableError(
            order.order_id,
            requested_cents=options.refund_shipping_cents,
            remaining_cents=shipping_remaining,
            message="Requested shipping refund exceeds remaining shipping",
            remainingShippingCents=shipping_remaining,
        )

    check_item_ceilings(order, state.attribution, selections)

    total = refund_total_cents(order, selections, options)
    if total <= 0:
        raise RefundValidationError(
            "Computed refund amount must be > 0",
            order_id=order.order_id,
            field_errors={"restockingFeeCents": ["leaves nothing to refund"]} if options.restocking_fee_cents else {},
        )
    if total > state.remaining.order_remaining_cents:
        raise ExceedsRefundableError(
            order.order_id,
            requested_cents=total,
            remaining_cents=state.remaining.order_remaining_cents,
        )
    return total


class RefundService:
    def __init__(self, session: Session, gateway: PaymentGateway | None = None):
        self.session = session
        self.store = RefundLedgerStore(session)
        self.gateway = gateway or build_payment_gateway()

    def create_refund(
        self,
        order_id: str,
        selections: Iterable[Selection],
        options: RefundOptions | None = None,
    ) -> RefundResult:
        options = options or RefundOptions()

        loaded = self.store.load_snapshot(order_id)
        if loaded is None:
            raise OrderNotFoundError(order_id)
        order_row, snapshot = loaded
        order = snapshot.order
        seen_version = order_row.version

        # Pending refunds and claimed attempts without a refund record count here,
        # so a request validated while another is at the gateway sees its amount.
        state = compute_refund_state(order, snapshot.refunds + snapshot.in_flight, include_pending=True)

        try:
            normalized = normalize_selections(order, selections)
        except RefundValidationError:
            if state.remaining.fully_refunded:
                raise FullyRefundedError(order.order_id) from None
            raise
        key = options.idempotency_key or build_idempotency_key(order.order_id, normalized, options)

        replay = self._replay_or_reject_duplicate(order.order_id, key)
        if replay is not None:
            return replay

        amount_cents = validate_refund(state, normalized, options)

        attempt = self._claim(order, seen_version, key, amount_cents, normalized, options)

        request = GatewayRefundRequest(
            order_id=order.order_id,
            order_number=order.order_number,
            amount_cents=amount_cents,
            currency=order.currency,
            payment_intent_id=order_row.payment_intent_id,
            charge_id=order_row.charge_id,
            account_id=order_row.gateway_account_id,
            reason=options.gateway_reason,
            metadata={
                "orderId": order.order_id,
                "orderNumber": order.order_number or "",
                "selections": canonical_json([sel.to_dict() for sel in normalized]).decode("ascii"),
                "app_reason": options.reason or "",
            },
        )
        logger.info(
            "creating gateway refund: order_id=%s amount_cents=%s backend=%s",
            order.order_id,
            amount_cents,
            self.gateway.backend,
        )
        try:
            gateway_result = self.gateway.create_refund(request, idempotency_key=key)
        except Exception as exc:
            self._fail_attempt(attempt, str(exc))
            if isinstance(exc, GatewayError):
                raise
            raise GatewayError(f"payment gateway call failed: {exc}", order_id=order.order_id) from exc

        refund = self._persist(order, order_row, attempt, gateway_result, normalized, options, key)

        summary = recompute_refund_state(self.session, order.order_id, include_pending=True)
        reconciliation_needed = summary is None
        self._finish_attempt(key, reconciliation_needed)

        return RefundResult(
            gateway_refund_id=refund.gateway_refund_id,
            status=refund.status,
            amount_cents=refund.amount_cents,
            local_refund_id=refund.id,
            idempotency_key=key,
            reconciliation_needed=reconciliation_needed,
        )

    def _replay_or_reject_duplicate(self, order_id: str, key: str) -> RefundResult | None:
        existing = self.store.get_refund_by_key(key)
        if existing is not None:
            logger.info("duplicate refund request replayed: order_id=%s refund_id=%s", order_id, existing.id)
            return RefundResult(
                gateway_refund_id=existing.gateway_refund_id,
                status=existing.status,
                amount_cents=existing.amount_cents,
                local_refund_id=existing.id,
                idempotency_key=key,
                replayed=True,
            )
        attempt = self.store.get_attempt(key)
        if attempt is not None and attempt.state != "failed":
            raise RefundInFlightError(order_id, key, attempt.state)
        return None

    def _claim(
        self,
        order: OrderView,
        seen_version: int,
        key: str,
        amount_cents: int,
        selections: list[Selection],
        options: RefundOptions,
    ) -> RefundAttemptModel:
        if not self.store.claim_order_version(order.order_id, seen_version):
            self.session.rollback()
            raise ConcurrentRefundError(order.order_id)

        request_json = {
            "selections": [sel.to_dict() for sel in selections],
            "options": options.key_fields(),
            "notes": options.notes,
        }
        attempt = self.store.get_attempt(key)
        try:
            if attempt is None:
                attempt = self.store.start_attempt(key, order.order_id, amount_cents, request_json)
            else:
                # A failed attempt moved no money; the same key may go again.
                self.store.mark_attempt(attempt, "validated", amount_cents=amount_cents, request_json=request_json, error=None)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise RefundInFlightError(order.order_id, key, "validated") from exc
        return attempt

    def _fail_attempt(self, attempt: RefundAttemptModel, error: str) -> None:
        self.store.mark_attempt(attempt, "failed", error=error[:2000])
        self.session.commit()

    def _persist(
        self,
        order: OrderView,
        order_row,
        attempt: RefundAttemptModel,
        gateway_result,
        selections: list[Selection],
        options: RefundOptions,
        key: str,
    ) -> RefundModel:
        lines = order.lines_by_id()
        try:
            self.store.mark_attempt(
                attempt,
                "gateway_called",
                gateway_refund_id=gateway_result.refund_id,
                gateway_status=gateway_result.status,
            )
            self.session.commit()

            refund = self.store.add_refund(
                RefundModel(
                    order_id=order.order_id,
                    order_number=order.order_number,
                    gateway_refund_id=gateway_result.refund_id,
                    payment_intent_id=order_row.payment_intent_id,
                    charge_id=order_row.charge_id,
                    amount_cents=gateway_result.amount_cents,
                    status=gateway_result.status,
                    reason=options.reason,
                    selections=[selection_snapshot(lines[sel.item_id], sel) for sel in selections],
                    fees={
                        "restockingFeeCents": options.restocking_fee_cents,
                        "refundShippingCents": options.refund_shipping_cents,
                    },
                    notes=options.notes,
                    idempotency_key=key,
                )
            )
            self.store.mark_attempt(attempt, "persisted", refund_id=refund.id)
            self.session.commit()
            return refund
        except Exception as exc:
            self.session.rollback()
            logger.error(
                "gateway refund succeeded but local persist failed, manual reconciliation needed: "
                "order_id=%s gateway_refund_id=%s amount_cents=%s idempotency_key=%s error=%s",
                order.order_id,
                gateway_result.refund_id,
                gateway_result.amount_cents,
                key,
                exc,
            )
            self._mark_partially_applied(key, gateway_result, f"persist_failed: {exc}")
            raise GatewaySucceededLocalPersistFailed(
                order.order_id,
                gateway_refund_id=gateway_result.refund_id,
                amount_cents=gateway_result.amount_cents,
                idempotency_key=key,
            ) from exc

    def _mark_partially_applied(self, key: str, gateway_result, error: str) -> None:
        try:
            attempt = self.store.get_attempt(key)
            if attempt is None:
                return
            self.store.mark_attempt(
                attempt,
                "partially_applied",
                gateway_refund_id=gateway_result.refund_id,
                gateway_status=gateway_result.status,
                error=error[:2000],
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception(
                "could not record partially applied refund attempt: idempotency_key=%s gateway_refund_id=%s",
                key,
                gateway_result.refund_id,
            )

    def _finish_attempt(self, key: str, reconciliation_needed: bool) -> None:
        # The refund record is already durable; a failure here only leaves the attempt at "persisted".
        try:
            attempt = self.store.get_attempt(key)
            if attempt is None:
                return
            if reconciliation_needed:
                logger.warning("refund recorded but recompute failed: idempotency_key=%s", key)
                self.store.mark_attempt(attempt, "partially_applied", error="recompute_failed")
            else:
                self.store.mark_attempt(attempt, "done")
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("could not close refund attempt: idempotency_key=%s", key)
