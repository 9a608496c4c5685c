from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import logging
from jose import JWTError, jwt
from medaccess.config import settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60
ALGORITHM = "HS256"


def _secret() -> str:
    if settings.SESSION_SECRET:
        return settings.SESSION_SECRET
    if settings.ENVIRONMENT == "production":
        raise ValueError("SESSION_SECRET is required in production")
    return "dev-secret-key-for-testing"


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a bearer token the way the identity provider does (used by tooling and tests)"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, _secret(), algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify an identity-provider bearer token.
    Returns the claims, or None when the signature or expiry is invalid.
    """
    try:
        return jwt.decode(token, _secret(), algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"Bearer verification failed: {type(e).__name__}")
        return None
