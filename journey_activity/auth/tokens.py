from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt


@dataclass(frozen=True)
class TokenVerification:
    """Outcome of checking a Journey Builder signed token."""
    valid: bool
    claims: dict[str, Any] | None = None
    reason: str | None = None


def extract_activity_token(body: Any) -> str | None:
    """Pull the signed token out of a lifecycle body (keyValue, jwt, or a bare string body)."""
    if isinstance(body, str):
        return body.strip() or None
    if not isinstance(body, dict):
        return None
    for key in ("keyValue", "jwt"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def verify_activity_token(
    token: str | None,
    secret: str | None,
    algorithm: str = "HS256",
) -> TokenVerification:
    """Verify signature and expiry. Never raises; callers decide whether to proceed."""
    if not token:
        return TokenVerification(valid=False, reason="missing_token")
    if not secret:
        return TokenVerification(valid=False, reason="missing_secret")
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm], options={"verify_aud": False})
    except JWTError as exc:
        return TokenVerification(valid=False, reason=str(exc) or "invalid_token")
    if not isinstance(claims, dict):
        return TokenVerification(valid=False, reason="unexpected_claims_type")
    return TokenVerification(valid=True, claims=claims)
