"""Refresh an order's cached refund state from the refund log.

``refunded_total_cents``, ``last_refund_at``, ``status`` and ``refund_summary``
on the order are a cache of the refund log. This is the only writer of those
columns. It is idempotent and safe to run redundantly, after every refund and
as a periodic repair job. It never raises: failures are logged and reported
as ``None``.

Call it at a transaction boundary. A failed attempt rolls the session back.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from refund_recon.core.config import get_settings
from refund_recon.domain.readers import filter_counted
from refund_recon.domain.remaining import compute_refund_state
from refund_recon.ledger.store import RefundLedgerStore

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, StaleDataError)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_order_status(current: str, refunded_cents: int, total_cents: int) -> str:
    if current == "canceled":
        return current
    if refunded_cents <= 0:
        return "paid"
    if refunded_cents >= total_cents:
        return "refunded"
    return "partially_refunded"


def _recompute_once(session: Session, order_id: str, include_pending: bool) -> dict[str, Any] | None:
    store = RefundLedgerStore(session)
    loaded = store.load_snapshot(order_id)
    if loaded is None:
        logger.warning("recompute skipped, order not found: order_id=%s", order_id)
        return None
    order_row, snapshot = loaded

    state = compute_refund_state(snapshot.order, snapshot.refunds, include_pending)
    counted = filter_counted(snapshot.refunds, include_pending)
    refunded_cents = state.remaining.refunded_cents_from_log

    stamps = [as_utc(refund.updated_at or refund.created_at) for refund in counted]
    stamps = [stamp for stamp in stamps if stamp is not None]
    last_refund_at = max(stamps) if stamps else None

    status = next_order_status(order_row.status, refunded_cents, order_row.total_cents)
    summary = state.to_response()
    summary["unattributedRefundIds"] = list(state.attribution.unattributed_refund_ids)

    changed = (
        order_row.refunded_total_cents != refunded_cents
        or as_utc(order_row.last_refund_at) != last_refund_at
        or order_row.status != status
        or (order_row.refund_summary or {}) != summary
    )
    if not changed:
        return summary

    order_row.refunded_total_cents = refunded_cents
    order_row.last_refund_at = last_refund_at
    order_row.status = status
    order_row.refund_summary = summary
    order_row.updated_at = datetime.now(timezone.utc)
    session.flush()
    logger.info(
        "order refund state refreshed: order_id=%s refunded_cents=%s status=%s",
        order_id,
        refunded_cents,
        status,
    )
    return summary


def recompute_refund_state(session: Session, order_id: str, include_pending: bool = False) -> dict[str, Any] | None:
    settings = get_settings()
    max_tries = max(1, settings.recompute_max_tries)

    for attempt in range(1, max_tries + 1):
        try:
            return _recompute_once(session, order_id, include_pending)
        except TRANSIENT_ERRORS as exc:
            session.rollback()
            if attempt < max_tries:
                time.sleep(settings.recompute_backoff_ms * attempt / 1000)
                continue
            logger.warning(
                "recompute exhausted retries: order_id=%s max_tries=%s error=%s",
                order_id,
                max_tries,
                exc,
            )
            return None
        except SQLAlchemyError:
            session.rollback()
            logger.exception("recompute failed: order_id=%s attempt=%s", order_id, attempt)
            return None
    return None
