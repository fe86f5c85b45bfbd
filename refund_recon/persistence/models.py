from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderModel(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="usd", nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    items: Mapped[list] = mapped_column(_json_type(), default=list, nullable=False)
    amounts: Mapped[dict] = mapped_column(_json_type(), default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="paid", nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    gateway_account_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Cache of the refund log; recompute owns these columns.
    refunded_total_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    last_refund_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_summary: Mapped[dict] = mapped_column(_json_type(), default=dict, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def as_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "currency": self.currency,
            "totalCents": self.total_cents,
            "items": list(self.items or []),
            "amounts": dict(self.amounts or {}),
            "status": self.status,
            "refundedTotalCents": self.refunded_total_cents,
        }


class RefundModel(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
    )
    order_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_refund_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="succeeded", nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    selections: Mapped[list] = mapped_column(_json_type(), default=list, nullable=False)
    fees: Mapped[dict] = mapped_column(_json_type(), default=dict, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def as_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order": self.order_id,
            "amountCents": self.amount_cents,
            "status": self.status,
            "selections": list(self.selections or []),
            "fees": dict(self.fees or {}),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class RefundAttemptModel(Base):
    """One row per idempotency key, tracking how far a refund request got.

    A row left in ``gateway_called`` or ``partially_applied`` means money may
    have moved without a matching local refund record.
    """

    __tablename__ = "refund_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    request_json: Mapped[dict] = mapped_column(_json_type(), default=dict, nullable=False)
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    gateway_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def as_document(self) -> dict[str, Any]:
        """The attempt shaped as a pending refund record."""
        request = self.request_json or {}
        return {
            "id": f"attempt:{self.idempotency_key}",
            "order": self.order_id,
            "amountCents": self.amount_cents,
            "status": "pending",
            "selections": list(request.get("selections") or []),
            "fees": dict(request.get("options") or {}),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


Index("ix_refunds_order_id", RefundModel.order_id)
Index("ix_refunds_order_status", RefundModel.order_id, RefundModel.status)
Index("ix_refund_attempts_state", RefundAttemptModel.state)
