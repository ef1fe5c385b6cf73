"""
core/security.py
----------------
Credential hashing and the access tokens handed out by /auth/login.

A token carries the user id in ``sub`` and the role. An admin's token also
carries the tenant_code of the store they own, which is what the tenant
router reads to pick that store's database. Customers choose a store per
request through the tenant header instead, so their tokens have no
tenant_code claim.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt
from passlib.context import CryptContext

from commerce.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)


# ── Passwords ─────────────────────────────────────────────────────────────────

def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """True when ``plain`` matches the stored bcrypt hash."""
    return pwd_context.verify(plain, hashed)


# ── Access tokens ─────────────────────────────────────────────────────────────

def create_access_token(
    subject: str,
    role: str,
    tenant_code: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Sign an access token for a logged-in user.

    Args:
        subject: id of the user.
        role: 'admin' or 'customer'.
        tenant_code: Store owned by an admin. Left out of the claims when empty.
        expires_delta: Lifetime override; ACCESS_TOKEN_EXPIRE_MINUTES otherwise.
    """
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    if tenant_code:
        claims["tenant_code"] = tenant_code
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Return the claims of a token, raising JWTError if it is expired or forged."""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
