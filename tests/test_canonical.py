from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from refund_recon.domain.money import QuantitySelection
from refund_recon.ledger.canonical import CanonicalError, canonical_json, sha256_hex


def test_canonical_json_stable_key_order():
    obj_a = {"b": 2, "a": 1, "nested": {"y": 2, "x": 1}}
    obj_b = {"nested": {"x": 1, "y": 2}, "a": 1, "b": 2}

    assert canonical_json(obj_a) == canonical_json(obj_b)
    assert sha256_hex(obj_a) == sha256_hex(obj_b)


def test_canonical_json_rejects_float():
    with pytest.raises(CanonicalError):
        canonical_json({"amountCents": 12.5})


def test_canonical_datetime_normalized_to_utc_z():
    dt = datetime(2026, 1, 1, 8, 0, tzinfo=timezone(timedelta(hours=8)))
    encoded = canonical_json({"at": dt}).decode("utf-8")
    assert '"2026-01-01T00:00:00.000000Z"' in encoded


def test_canonical_uses_to_dict_and_decimal_text():
    encoded = canonical_json({"sel": QuantitySelection(item_id="A", quantity=2), "rate": Decimal("1.50")})
    assert encoded == b'{"rate":"1.50","sel":{"itemId":"A","quantity":2,"type":"quantity"}}'


def test_sha256_prefix_changes_digest():
    payload = {"orderId": "o1"}
    assert sha256_hex(payload, prefix="refund:v2:") != sha256_hex(payload)
    assert len(sha256_hex(payload, prefix="refund:v2:")) == 64
