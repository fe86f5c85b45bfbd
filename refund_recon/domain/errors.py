from __future__ import annotations

from typing import Any


class RefundError(Exception):
    code = "REFUND_ERROR"
    status_code = 400

    def __init__(self, message: str, order_id: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.order_id = order_id
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": self.message,
            "code": self.code,
            "orderId": self.order_id,
        }
        body.update(self.context)
        return body


class RefundValidationError(RefundError):
    """Malformed request; the caller can fix it. Never retried automatically."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        order_id: str | None = None,
        field_errors: dict[str, list[str]] | None = None,
    ):
        super().__init__(message, order_id=order_id)
        self.field_errors = field_errors or {}

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["details"] = {"fieldErrors": self.field_errors, "formErrors": [] if self.field_errors else [self.message]}
        return body


class OrderNotFoundError(RefundError):
    code = "ORDER_NOT_FOUND"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Order not found", order_id=order_id)


class FullyRefundedError(RefundError):
    """The order has nothing left to refund. Terminal."""

    code = "ALREADY_FULLY_REFUNDED"
    status_code = 409

    def __init__(self, order_id: str):
        super().__init__("Order is already fully refunded", order_id=order_id)


class ExceedsRefundableError(RefundError):
    """Requested more than remains; re-read remaining and resubmit."""

    code = "EXCEEDS_REMAINING"
    status_code = 409

    def __init__(
        self,
        order_id: str,
        requested_cents: int,
        remaining_cents: int,
        message: str = "Requested refund exceeds remaining refundable amount",
        **context: Any,
    ):
        super().__init__(
            message,
            order_id=order_id,
            requestedCents=requested_cents,
            remainingCents=remaining_cents,
            **context,
        )
        self.requested_cents = requested_cents
        self.remaining_cents = remaining_cents


class ConcurrentRefundError(RefundError):
    code = "CONCURRENT_MODIFICATION"
    status_code = 409

    def __init__(self, order_id: str):
        super().__init__("Order changed while the refund was being validated; re-read and retry", order_id=order_id)


class RefundInFlightError(RefundError):
    code = "DUPLICATE_IN_FLIGHT"
    status_code = 409

    def __init__(self, order_id: str, idempotency_key: str, state: str):
        super().__init__(
            "An identical refund request is already in flight",
            order_id=order_id,
            idempotencyKey=idempotency_key,
            attemptState=state,
        )
        self.idempotency_key = idempotency_key
        self.state = state


class AuthorizationError(RefundError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, order_id: str | None = None, message: str = "FORBIDDEN"):
        super().__init__(message, order_id=order_id)


class GatewayError(RefundError):
    """The gateway rejected or failed the call; no money moved."""

    code = "GATEWAY_ERROR"
    status_code = 502


class GatewaySucceededLocalPersistFailed(RefundError):
    """Money moved at the gateway but the local ledger write did not land."""

    code = "RECONCILIATION_NEEDED"
    status_code = 500

    def __init__(self, order_id: str, gateway_refund_id: str, amount_cents: int, idempotency_key: str):
        super().__init__(
            "Refund was issued by the payment gateway but could not be recorded locally; "
            "an operator must reconcile it",
            order_id=order_id,
            gatewayRefundId=gateway_refund_id,
            amountCents=amount_cents,
            idempotencyKey=idempotency_key,
        )
        self.gateway_refund_id = gateway_refund_id
        self.amount_cents = amount_cents
        self.idempotency_key = idempotency_key
