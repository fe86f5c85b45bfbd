from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from refund_recon.domain.errors import OrderNotFoundError
from refund_recon.domain.readers import read_order, read_selection
from refund_recon.domain.requests import selection_snapshot
from refund_recon.ledger.store import RefundLedgerStore

logger = logging.getLogger(__name__)


def backfill_selections(session: Session, order_id: str) -> int:
    """Rewrite legacy-shaped selections on an order's refunds into the tagged form.

    Only entries that already carry a usable quantity or amount are rewritten.
    Bare ``{itemId}`` entries and entries without an item stay as they are;
    this never invents attribution. Returns the number of refunds changed.
    """
    store = RefundLedgerStore(session)
    order_row = store.get_order(order_id)
    if order_row is None:
        raise OrderNotFoundError(order_id)
    lines = read_order(order_row.as_document()).lines_by_id()

    changed = 0
    for refund in store.list_refunds(order_id):
        rewritten = []
        dirty = False
        for raw in refund.selections or []:
            selection, item_id, legacy = read_selection(raw)
            if selection is None or not legacy:
                rewritten.append(raw)
                continue
            line = lines.get(selection.item_id)
            rewritten.append(selection_snapshot(line, selection) if line else selection.to_dict())
            dirty = True
        if dirty:
            refund.selections = rewritten
            changed += 1
            logger.info("refund selections backfilled: order_id=%s refund_id=%s", order_id, refund.id)

    session.flush()
    return changed
