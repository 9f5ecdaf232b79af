from __future__ import annotations

import hmac
import secrets
from typing import Any

from fastapi import Depends, HTTPException, Request

from failover.store import Store
from failover_api.settings import FailoverSettings


COOKIE_AUTH_TOKEN = "auth_token"


def generate_token() -> str:
    return secrets.token_hex(32)


def token_matches(candidate: str, expected: str) -> bool:
    c = (candidate or "").strip()
    e = (expected or "").strip()
    if not c or not e:
        return False
    return hmac.compare_digest(c, e)


def get_settings(req: Request) -> FailoverSettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, FailoverSettings):
        raise RuntimeError("Failover settings not configured")
    return settings


def get_store(req: Request) -> Store:
    store: Any = getattr(req.app.state, "store", None)
    if not isinstance(store, Store):
        raise RuntimeError("Store not configured")
    return store


def cookie_token(req: Request) -> str:
    return (req.cookies.get(COOKIE_AUTH_TOKEN) or "").strip()


def require_login(req: Request, store: Store = Depends(get_store)) -> None:
    """Open until an admin token is set; afterwards the auth cookie must match it."""
    if not store.has_auth_token():
        return
    token = cookie_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="not logged in")
    if not token_matches(token, store.get_auth_token()):
        raise HTTPException(status_code=401, detail="session expired")
