from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import jwt

from agent.errors import AuthRejectedError, GatewayError
from app.core.config import get_settings


GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def _normalize_private_key(raw_key: str) -> str:
    key = raw_key.strip()
    if "\\n" in key:
        key = key.replace("\\n", "\n")
    return key


def build_service_account_assertion(*, now: datetime | None = None) -> str:
    settings = get_settings()
    client_email = (settings.chronos_sa_client_email or "").strip()
    private_key = _normalize_private_key(settings.chronos_sa_private_key or "")
    if not client_email or not private_key:
        raise AuthRejectedError("service account credentials are not configured")

    now = now or datetime.now(timezone.utc)
    payload = {
        "iss": client_email,
        "scope": CALENDAR_SCOPE,
        "aud": GOOGLE_TOKEN_URL,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=1)).timestamp()),
    }
    encoded = jwt.encode(payload, private_key, algorithm="RS256", headers={"typ": "JWT"})
    return str(encoded)


async def fetch_service_account_token() -> str:
    """Exchange a signed assertion for a short-lived calendar access token."""
    assertion = build_service_account_assertion()
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
    except httpx.HTTPError as exc:
        raise GatewayError(f"token_exchange:error:{exc.__class__.__name__}") from exc

    if response.status_code in (400, 401, 403):
        raise AuthRejectedError(f"token_exchange_rejected:{response.status_code}")
    if response.status_code >= 400:
        raise GatewayError(f"token_exchange_failed:{response.status_code}", status_code=response.status_code)

    token = (response.json() or {}).get("access_token")
    if not token:
        raise GatewayError("token_exchange_missing_access_token")
    return str(token)
