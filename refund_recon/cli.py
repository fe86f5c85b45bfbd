from __future__ import annotations

import argparse
import json

from refund_recon.core.logging import configure_logging
from refund_recon.domain.errors import RefundError
from refund_recon.domain.remaining import compute_refund_state
from refund_recon.ledger.store import RefundLedgerStore
from refund_recon.persistence.pg import init_db, session_scope
from refund_recon.reconciliation.rules import check_order_invariants, find_partially_applied_attempts
from refund_recon.services.backfill import backfill_selections
from refund_recon.services.recompute import recompute_refund_state


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Refund reconciliation CLI")
    top = parser.add_subparsers(dest="command", required=True)

    remaining = top.add_parser("remaining", help="Show remaining refundable amounts for an order")
    remaining.add_argument("order_id")
    remaining.add_argument("--include-pending", action="store_true")

    recompute = top.add_parser("recompute", help="Refresh an order's cached refund state")
    recompute.add_argument("order_id")
    recompute.add_argument("--include-pending", action="store_true")

    reconcile = top.add_parser("reconcile", help="Check refund invariants and list partially applied attempts")
    reconcile.add_argument("--order-id", default=None)
    reconcile.add_argument("--include-pending", action="store_true")

    backfill = top.add_parser("backfill-selections", help="Rewrite legacy refund selections into the tagged form")
    backfill.add_argument("order_id", nargs="+")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _run_remaining(args: argparse.Namespace) -> int:
    with session_scope() as session:
        loaded = RefundLedgerStore(session).load_snapshot(args.order_id)
        if loaded is None:
            _print({"ok": False, "code": "ORDER_NOT_FOUND", "orderId": args.order_id})
            return 1
        _, snapshot = loaded
        state = compute_refund_state(snapshot.order, snapshot.refunds, args.include_pending)
        _print({"ok": True, **state.to_response()})
    return 0


def _run_recompute(args: argparse.Namespace) -> int:
    with session_scope() as session:
        summary = recompute_refund_state(session, args.order_id, include_pending=args.include_pending)
    _print({"ok": summary is not None, "orderId": args.order_id, "summary": summary})
    return 0 if summary is not None else 1


def _run_reconcile(args: argparse.Namespace) -> int:
    with session_scope() as session:
        body: dict = {"orderId": args.order_id}
        passed = True
        if args.order_id:
            loaded = RefundLedgerStore(session).load_snapshot(args.order_id)
            if loaded is None:
                _print({"ok": False, "code": "ORDER_NOT_FOUND", "orderId": args.order_id})
                return 1
            _, snapshot = loaded
            results = check_order_invariants(snapshot.order, snapshot.refunds, include_pending=args.include_pending)
            body["checks"] = [result.to_dict() for result in results]
            passed = all(result.passed for result in results)
        attempts = find_partially_applied_attempts(session, order_id=args.order_id)
        body["partiallyAppliedAttempts"] = attempts
        body["ok"] = passed and not attempts
    _print(body)
    return 0 if body["ok"] else 1


def _run_backfill(args: argparse.Namespace) -> int:
    changed: dict[str, int] = {}
    try:
        with session_scope() as session:
            for order_id in args.order_id:
                changed[order_id] = backfill_selections(session, order_id)
    except RefundError as exc:
        _print(exc.to_dict())
        return 1
    _print({"ok": True, "changed": changed})
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    init_db()

    handlers = {
        "remaining": _run_remaining,
        "recompute": _run_recompute,
        "reconcile": _run_reconcile,
        "backfill-selections": _run_backfill,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.error("unsupported command")
        return 2
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
