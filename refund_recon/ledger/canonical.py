from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from hashlib import sha256
from typing import Any
from uuid import UUID


class CanonicalError(ValueError):
    pass


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return text.replace("+00:00", "Z")


def to_canonical_obj(value: Any) -> Any:
    """Reduce ``value`` to JSON primitives with a stable shape.

    Money is integer cents throughout, so floats are refused rather than
    silently rounded into a hash.
    """
    if isinstance(value, bool) or value is None or isinstance(value, (str, int)):
        return value
    if isinstance(value, float):
        raise CanonicalError("float values are not allowed in canonical JSON")
    if isinstance(value, Enum):
        return to_canonical_obj(value.value)
    if isinstance(value, dict):
        return {str(k): to_canonical_obj(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [to_canonical_obj(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return _iso_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if hasattr(value, "to_dict"):
        return to_canonical_obj(value.to_dict())
    if hasattr(value, "model_dump"):
        return to_canonical_obj(value.model_dump())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_canonical_obj(dataclasses.asdict(value))
    raise CanonicalError(f"unsupported canonical type: {type(value)!r}")


def canonical_json(value: Any) -> bytes:
    return json.dumps(
        to_canonical_obj(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    ).encode("utf-8")


def sha256_hex(value: Any, prefix: str = "") -> str:
    digest = sha256()
    if prefix:
        digest.update(prefix.encode("utf-8"))
    digest.update(canonical_json(value))
    return digest.hexdigest()
