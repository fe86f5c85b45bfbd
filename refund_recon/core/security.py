from __future__ import annotations

from typing import Literal

from fastapi import Header, HTTPException
from pydantic import BaseModel

from refund_recon.core.config import get_settings
from refund_recon.domain.errors import AuthorizationError


ActorType = Literal["staff", "system", "customer"]

STAFF_ROLES = {"staff", "system"}


class Actor(BaseModel):
    type: ActorType
    id: str


def _auth_error(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _extract_api_key(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _auth_error("invalid authorization header")
        return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    return None


def _actor_from_api_key(api_key: str) -> Actor | None:
    settings = get_settings()
    key_map = {
        settings.staff_api_key: Actor(type="staff", id=settings.staff_actor_id),
        settings.system_api_key: Actor(type="system", id=settings.system_actor_id),
        settings.customer_api_key: Actor(type="customer", id=settings.customer_actor_id),
    }
    return key_map.get(api_key)


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(type="staff", id=settings.staff_actor_id)

    api_key = _extract_api_key(authorization, x_api_key)
    if not api_key:
        raise _auth_error("missing api key")

    actor = _actor_from_api_key(api_key)
    if actor is None:
        raise _auth_error("invalid api key")
    return actor


def require_staff(actor: Actor, order_id: str | None = None) -> None:
    if actor.type not in STAFF_ROLES:
        raise AuthorizationError(order_id=order_id)
