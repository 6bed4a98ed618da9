"""
Auth Routes for the OAP chatbot backend

Registration, password login (JWT issue) and API key management
"""

import logging
from typing import Optional
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth_models import User, APIKey
from auth_middleware import (
    JWT_EXPIRES_MINUTES,
    create_access_token,
    generate_api_key,
    hash_secret,
    require_auth,
    verify_secret,
)
from database import get_db_session

logger = logging.getLogger("oapchat.auth")

# Router
router = APIRouter(prefix="/auth", tags=["authentication"])


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class CreateAPIKeyRequest(BaseModel):
    name: str
    expires_in_days: Optional[int] = None  # None = never expires


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _api_key_to_dict(key: APIKey) -> dict:
    """Serialize an API key without its secret"""
    return {
        "key_id": key.id,
        "key_prefix": key.key_prefix,
        "name": key.name,
        "created_at": key.created_at.isoformat(),
        "last_used": key.last_used.isoformat() if key.last_used else None,
        "usage_count": key.usage_count,
        "expires_at": key.expires_at.isoformat() if key.expires_at else None,
        "is_revoked": key.is_revoked
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: Session = Depends(get_db_session)):
    """Create a user account with a password"""
    email = _normalize_email(request.email)
    if not email or not request.password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email and password are required"
        )

    if db.query(User).filter(User.email == email).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered"
        )

    user = User(
        email=email,
        name=request.name,
        password_hash=hash_secret(request.password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered user {user.id}")

    return {"data": user.to_dict(), "message": "User registered"}


@router.post("/login")
async def login(request: LoginRequest, db: Session = Depends(get_db_session)):
    """Exchange email/password for a bearer JWT"""
    user = db.query(User).filter(User.email == _normalize_email(request.email)).first()

    if (
        not user
        or not user.password_hash
        or not verify_secret(request.password, user.password_hash)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is inactive"
        )

    return {
        "access_token": create_access_token(user.id),
        "token_type": "bearer",
        "expires_in": JWT_EXPIRES_MINUTES * 60,
    }


@router.get("/me")
async def get_current_user_info(user: User = Depends(require_auth)):
    """Get current authenticated user information"""
    return {"data": user.to_dict()}


@router.post("/api-keys")
async def create_api_key(
    request: CreateAPIKeyRequest,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    """Create a new API key for the authenticated user"""
    full_key, prefix, key_hash = generate_api_key()

    api_key = APIKey(
        user_id=user.id,
        key_prefix=prefix,
        key_hash=key_hash,
        name=request.name,
        expires_at=(
            datetime.utcnow() + timedelta(days=request.expires_in_days)
            if request.expires_in_days else None
        )
    )

    db.add(api_key)
    db.commit()
    db.refresh(api_key)

    return {"api_key": full_key, **_api_key_to_dict(api_key)}  # Only time the key is shown


@router.get("/api-keys")
async def list_api_keys(
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    """List all API keys for the authenticated user"""
    api_keys = db.query(APIKey).filter(APIKey.user_id == user.id).all()

    return {"api_keys": [_api_key_to_dict(key) for key in api_keys]}


@router.delete("/api-keys/{key_id}")
async def revoke_api_key(
    key_id: str,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session)
):
    """Revoke an API key"""
    api_key = db.query(APIKey).filter(
        APIKey.id == key_id,
        APIKey.user_id == user.id
    ).first()

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found"
        )

    api_key.is_revoked = True
    db.commit()

    return {"message": "API key revoked successfully"}
