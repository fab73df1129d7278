# deps/auth.py
import hmac

from fastapi import Header, HTTPException

from settings import settings


def require_service_key(
    x_api_key: str | None = Header(default=None, alias="X-Api-Key"),
) -> None:
    """
    Service-to-service auth for the upstream pool admin system.
    An empty SERVICE_API_KEY disables the check (dev only; startup refuses it elsewhere).
    """
    expected = (settings.SERVICE_API_KEY or "").strip()
    if not expected:
        return

    if not x_api_key or not hmac.compare_digest(x_api_key.strip(), expected):
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
