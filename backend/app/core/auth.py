import hmac

from fastapi import HTTPException, Request

from app.core.config import get_settings


INBOX_KEY_HEADER = "x-chronos-key"


def verify_inbox_key(request: Request) -> None:
    """Reject unattended callers that do not present the pre-shared secret."""
    settings = get_settings()
    expected = (settings.chronos_inbox_key or "").strip()
    if not expected:
        raise HTTPException(status_code=401, detail="inbox key is not configured")

    provided = request.headers.get(INBOX_KEY_HEADER, "").strip()
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="invalid inbox key")


def get_google_access_token(request: Request) -> str:
    authorization = request.headers.get("authorization", "")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="authorization token required")

    token = authorization.removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(status_code=401, detail="authorization token required")
    return token
