# control-plane/core/auth.py
"""
Operator tokens (HS256 JWT)

Claims: iss, aud, iat, exp, sub (operator id), jti.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

import jwt
from sqlalchemy.orm import Session

from config import settings
from database.models import utcnow
from .signing_key import get_signing_key

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def issue_token(db: Session, operator: str, ttl_seconds: Optional[int] = None) -> str:
    issued_at = utcnow()
    ttl = ttl_seconds if ttl_seconds is not None else settings.JWT_TTL_SECONDS
    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=ttl),
        "sub": str(operator),
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, get_signing_key(db), algorithm=ALGORITHM)


def decode_token(db: Session, token: str) -> Optional[dict]:
    """Verified claims, or None for any invalid, expired or foreign token"""
    try:
        return jwt.decode(
            token,
            get_signing_key(db),
            algorithms=[ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError as e:
        logger.debug(f"Rejected token: {e}")
        return None


def operator_from_token(db: Session, token: str) -> Optional[str]:
    claims = decode_token(db, token)
    if claims is None:
        return None
    return claims.get("sub")
