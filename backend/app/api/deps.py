"""FastAPI dependencies for the API layer."""

import hmac

from fastapi import Header, HTTPException, Request, status

from app.config import get_settings
from parley.realtime import Relay


def get_relay(request: Request) -> Relay:
    """Return the relay instance built at application startup."""

    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Relay is not running")
    return relay


def require_internal_token(x_relay_token: str | None = Header(default=None)) -> None:
    """Guard collaborator hooks with the shared internal token when one is configured."""

    expected = get_settings().internal_api_token
    if not expected:
        return
    if x_relay_token is None or not hmac.compare_digest(x_relay_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid relay token")
