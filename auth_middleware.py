"""
Authentication Middleware and Utilities for the OAP chatbot backend

Provides authentication via:
1. Bearer JWTs issued by /auth/login (sub = user id)
2. API keys (Authorization: Bearer oap_... or X-API-Key header)
"""

import os
import logging
import secrets
from typing import Optional, Annotated
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import HTTPException, Header, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth_models import User, APIKey
from database import get_db_session

logger = logging.getLogger("oapchat.auth")

JWT_SECRET = os.environ.get("JWT_SECRET", "secret")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_MINUTES = int(os.environ.get("JWT_EXPIRES_MINUTES", "1440"))

API_KEY_PREFIX = "oap_"
API_KEY_PREFIX_LENGTH = 12  # "oap_" + first 8 chars

# FastAPI security scheme
bearer_scheme = HTTPBearer(auto_error=False)


def hash_secret(value: str) -> str:
    """Hash a password or API key with bcrypt"""
    return bcrypt.hashpw(value.encode(), bcrypt.gensalt()).decode()


def verify_secret(value: str, hashed: str) -> bool:
    """Verify a password or API key against its bcrypt hash"""
    try:
        return bcrypt.checkpw(value.encode(), hashed.encode())
    except ValueError:
        # Malformed hash
        return False


def generate_api_key() -> tuple[str, str, str]:
    """Generate API key with prefix and hash

    Returns:
        tuple: (full_key, prefix, hash)
    """
    full_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    prefix = full_key[:API_KEY_PREFIX_LENGTH]
    key_hash = hash_secret(full_key)
    return full_key, prefix, key_hash


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    """Issue a signed JWT whose subject is the user id."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or JWT_EXPIRES_MINUTES),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def extract_token(headers: dict) -> Optional[str]:
    """Pull a bearer token or API key out of request headers (case-insensitive)."""
    auth_header = None
    api_key_header = None
    for key, value in headers.items():
        lowered = key.lower()
        if lowered == "authorization":
            auth_header = value
        elif lowered == "x-api-key":
            api_key_header = value

    if auth_header:
        parts = auth_header.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
            return parts[1].strip()

    return api_key_header or None


def user_from_api_key(db: Session, api_key: str) -> Optional[User]:
    """Resolve an oap_ API key to its active owner."""
    key_prefix = api_key[:API_KEY_PREFIX_LENGTH]

    # Find keys by prefix (prefix collisions are possible)
    api_keys = db.query(APIKey).filter(APIKey.key_prefix == key_prefix).all()

    for api_key_obj in api_keys:
        if not verify_secret(api_key, api_key_obj.key_hash):
            continue
        if not api_key_obj.is_valid:
            return None
        user = api_key_obj.user
        if not user or not user.is_active:
            return None

        api_key_obj.increment_usage()
        db.commit()
        return user

    return None


def user_from_jwt(db: Session, token: str) -> Optional[User]:
    """Resolve a bearer JWT to the user named by its subject."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None

    user = db.get(User, str(user_id))
    if not user or not user.is_active:
        return None
    return user


def verify_request_token(db: Session, headers: dict) -> Optional[User]:
    """
    Verify the caller from request headers (sync, no FastAPI dependencies).

    Checks Authorization: Bearer or X-API-Key header.
    Returns User if valid, None if missing/invalid.
    """
    token = extract_token(headers)
    if not token:
        return None
    if token.startswith(API_KEY_PREFIX):
        return user_from_api_key(db, token)
    return user_from_jwt(db, token)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_api_key: Annotated[Optional[str], Header()] = None,
    db: Session = Depends(get_db_session),
) -> Optional[User]:
    """Get current user from a bearer token or X-API-Key header"""
    headers = {}
    if credentials:
        headers["authorization"] = f"{credentials.scheme} {credentials.credentials}"
    if x_api_key:
        headers["x-api-key"] = x_api_key
    return verify_request_token(db, headers)


async def require_auth(
    user: Annotated[Optional[User], Depends(get_current_user)]
) -> User:
    """Require authentication - raises 401 if not authenticated"""
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return user
