"""FastAPI dependencies shared by the HTTP routes."""

import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from jobrelay.config import settings
from jobrelay.runtime import RelayRuntime


def get_runtime(request: Request) -> RelayRuntime:
    """The RelayRuntime owned by this app (set up in the lifespan)."""
    runtime = getattr(request.app.state, "relay", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Relay runtime not started")
    return runtime


def require_admin(authorization: Optional[str] = Header(None)) -> None:
    """Require `Authorization: Bearer <admin_token>` when a token is configured."""
    if not settings.admin_token:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token, settings.admin_token):
        raise HTTPException(
            status_code=401,
            detail="Admin token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
