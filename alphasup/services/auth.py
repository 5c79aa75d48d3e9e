"""Access tokens issued by the external identity provider.

This service never logs anyone in; it only verifies the HS256 JWTs the
identity provider signs with the shared ``SECRET_KEY`` and reads the claims
the payment routes need.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from alphasup.config import settings


@dataclass(frozen=True)
class Principal:
    uid: str
    is_admin: bool = False
    email: Optional[str] = None

    def can_access(self, owner_id: Optional[str]) -> bool:
        return self.is_admin or (owner_id is not None and owner_id == self.uid)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(uid: str, is_admin: bool = False, email: Optional[str] = None, expires_minutes: int = 15) -> str:
    """Mint a token in the identity provider's format (local tooling and tests)."""
    expire = _now() + timedelta(minutes=expires_minutes)
    payload = {"sub": uid, "type": "access", "admin": is_admin, "exp": int(expire.timestamp())}
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> Principal:
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type", "access") != "access":
        raise JWTError("Invalid token type")
    sub = payload.get("sub")
    if not sub:
        raise JWTError("Token has no subject")
    return Principal(uid=str(sub), is_admin=bool(payload.get("admin", False)), email=payload.get("email"))
