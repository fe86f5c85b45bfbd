from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from refund_recon.domain.readers import OrderSnapshot, read_order, read_refunds
from refund_recon.persistence.models import OrderModel, RefundAttemptModel, RefundModel

OPEN_ATTEMPT_STATES = ("validated", "gateway_called", "partially_applied")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RefundLedgerStore:
    """Query/update primitives over orders, the refund log and refund attempts."""

    def __init__(self, session: Session):
        self.session = session

    def get_order(self, order_id: str, fresh: bool = False) -> OrderModel | None:
        stmt = select(OrderModel).where(OrderModel.id == order_id)
        if fresh:
            # The version claim bypasses the identity map.
            stmt = stmt.execution_options(populate_existing=True)
        return self.session.scalar(stmt)

    def list_refunds(self, order_id: str, statuses: Iterable[str] | None = None) -> list[RefundModel]:
        stmt: Select[tuple[RefundModel]] = (
            select(RefundModel)
            .where(RefundModel.order_id == order_id)
            .order_by(RefundModel.created_at.asc(), RefundModel.id.asc())
        )
        if statuses is not None:
            stmt = stmt.where(RefundModel.status.in_(list(statuses)))
        return list(self.session.scalars(stmt).all())

    def load_snapshot(self, order_id: str) -> tuple[OrderModel, OrderSnapshot] | None:
        # Session autoflush is disabled globally; flush so just-added refunds are visible.
        self.session.flush()
        order = self.get_order(order_id, fresh=True)
        if order is None:
            return None
        refunds = self.list_refunds(order_id)
        in_flight = self.list_in_flight_attempts(order_id)
        snapshot = OrderSnapshot(
            order=read_order(order.as_document()),
            refunds=read_refunds(refund.as_document() for refund in refunds),
            in_flight=read_refunds(attempt.as_document() for attempt in in_flight),
        )
        return order, snapshot

    def get_refund_by_key(self, idempotency_key: str) -> RefundModel | None:
        stmt = select(RefundModel).where(RefundModel.idempotency_key == idempotency_key)
        return self.session.scalar(stmt)

    def add_refund(self, refund: RefundModel) -> RefundModel:
        self.session.add(refund)
        self.session.flush()
        return refund

    def claim_order_version(self, order_id: str, seen_version: int) -> bool:
        """Compare-and-swap on ``orders.version``; False when another writer got there first."""
        result = self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.version == seen_version)
            .values(version=OrderModel.version + 1, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_attempt(self, idempotency_key: str) -> RefundAttemptModel | None:
        stmt = select(RefundAttemptModel).where(RefundAttemptModel.idempotency_key == idempotency_key)
        return self.session.scalar(stmt)

    def start_attempt(self, idempotency_key: str, order_id: str, amount_cents: int, request_json: dict) -> RefundAttemptModel:
        attempt = RefundAttemptModel(
            idempotency_key=idempotency_key,
            order_id=order_id,
            state="validated",
            amount_cents=amount_cents,
            request_json=request_json,
            created_at=_now(),
            updated_at=_now(),
        )
        self.session.add(attempt)
        self.session.flush()
        return attempt

    def mark_attempt(self, attempt: RefundAttemptModel, state: str, **fields) -> RefundAttemptModel:
        attempt.state = state
        for name, value in fields.items():
            setattr(attempt, name, value)
        attempt.updated_at = _now()
        self.session.flush()
        return attempt

    def list_open_attempts(self, order_id: str | None = None, states: Iterable[str] = OPEN_ATTEMPT_STATES) -> list[RefundAttemptModel]:
        stmt = (
            select(RefundAttemptModel)
            .where(RefundAttemptModel.state.in_(list(states)))
            .order_by(RefundAttemptModel.id.asc())
        )
        if order_id is not None:
            stmt = stmt.where(RefundAttemptModel.order_id == order_id)
        return list(self.session.scalars(stmt).all())

    def list_in_flight_attempts(self, order_id: str) -> list[RefundAttemptModel]:
        """Open attempts whose money may have moved but which have no refund record."""
        return [attempt for attempt in self.list_open_attempts(order_id) if attempt.refund_id is None]
