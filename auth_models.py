"""
User and API Key Models for the OAP chatbot backend

Extends models.py with authentication tables.
"""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Integer, ForeignKey
from sqlalchemy.orm import relationship

from models import Base, _uuid_default, _isoformat


class User(Base):
    """User account - authenticates with a bearer JWT or an API key"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    email = Column(String(320), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    password_hash = Column(String(255), nullable=True)  # bcrypt

    # Account status
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    api_keys = relationship("APIKey", back_populates="user", cascade="all, delete-orphan")
    notes = relationship("Note", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "isActive": self.is_active,
            "createdAt": _isoformat(self.created_at),
        }


class APIKey(Base):
    """API keys for programmatic access (MCP tools, etc.)"""
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Key components
    key_prefix = Column(String(12), nullable=False, index=True)  # "oap_" + first 8 chars
    key_hash = Column(String(255), nullable=False, unique=True)  # bcrypt hash of full key

    name = Column(String(255), nullable=False)  # User-provided name

    # Usage tracking
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_used = Column(DateTime, nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)

    # Expiry and revocation
    expires_at = Column(DateTime, nullable=True)  # None = no expiry
    is_revoked = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="api_keys")

    @property
    def is_valid(self) -> bool:
        if self.is_revoked:
            return False
        if self.expires_at and datetime.utcnow() > self.expires_at:
            return False
        return True

    def increment_usage(self):
        """Track key usage"""
        self.usage_count = (self.usage_count or 0) + 1
        self.last_used = datetime.utcnow()
