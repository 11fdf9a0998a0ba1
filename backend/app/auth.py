import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.config import Settings
from app.container import Container, get_container


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(settings: Settings, payload: bytes) -> bytes:
    return hmac.new(settings.auth_secret.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str, settings: Settings) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=settings.auth_token_ttl_hours)
    payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(settings, payload))}"
    return token, expiry.isoformat()


def verify_access_token(token: str, settings: Settings) -> Optional[str]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        if not hmac.compare_digest(_b64urldecode(sig_part), _sign(settings, payload)):
            return None
        user_id, expiry_ts = payload.decode("utf-8").split("|", 1)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        return user_id
    except (ValueError, UnicodeDecodeError):
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_user(authorization: Optional[str], settings: Settings) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token, settings)


def require_authenticated_user(
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
) -> str:
    user_id = resolve_request_user(authorization, container.settings)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return user_id


def assert_actor_authorized(actor_user_id: str, authorization: Optional[str], settings: Settings) -> None:
    token_user = resolve_request_user(authorization, settings)
    if not token_user:
        if settings.auth_required:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_user != actor_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")
