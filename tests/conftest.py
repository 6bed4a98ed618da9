"""
Pytest fixtures for the OAP chatbot backend tests.

Uses a shared in-memory SQLite database and a mocked upstream OAP API.
"""
import os
import sys
from dataclasses import dataclass, field

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment before any imports
os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("REQUIRE_MCP_AUTH", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-long-enough-for-hs256")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import ALL model modules to register tables with Base.metadata
from models import Base
import auth_models  # noqa: F401
from auth_models import User
from auth_middleware import create_access_token, hash_secret
from database import DB
import oap_client

OAP_TEST_URL = "http://oap.test/api"


@pytest.fixture
def anyio_backend():
    """Run anyio-marked tests on asyncio, the backend the MCP stack requires."""
    return "asyncio"


@pytest.fixture
def db_engine():
    """
    Create a SHARED in-memory database that persists across connections.

    StaticPool keeps a single connection so every session sees the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Create a test database session."""
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def server_db(db_engine):
    """Bind database.DB to the in-memory engine for route and tool tests."""
    SessionLocal = sessionmaker(bind=db_engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = db_engine
    DB.SessionLocal = SessionLocal
    try:
        yield DB
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session


@pytest.fixture
def make_user(db_session):
    def _make_user(email: str = "user@example.com", password: str = "hunter22", **kwargs) -> User:
        user = User(
            email=email,
            name=kwargs.pop("name", "Test User"),
            password_hash=hash_secret(password),
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _auth_headers


@dataclass
class UpstreamRecorder:
    """Canned upstream responses keyed by (method, path) and a log of requests."""
    routes: dict = field(default_factory=dict)
    requests: list = field(default_factory=list)

    def add(self, method: str, path: str, body=None, status_code: int = 200):
        self.routes[(method, path)] = (status_code, body)

    def find(self, method: str, path: str) -> httpx.Request:
        for request in self.requests:
            if request.method == method and request.url.path == path:
                return request
        raise AssertionError(f"No upstream {method} {path} request recorded")


@pytest.fixture
def upstream(monkeypatch):
    """Point oap_client at a MockTransport that serves canned JSON."""
    recorder = UpstreamRecorder()

    def handler(request: httpx.Request) -> httpx.Response:
        recorder.requests.append(request)
        status_code, body = recorder.routes.get(
            (request.method, request.url.path), (200, {"ok": True})
        )
        if isinstance(body, Exception):
            raise body
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    monkeypatch.setattr(oap_client, "OAP_BACKEND_URL", OAP_TEST_URL)
    monkeypatch.setattr(oap_client, "OAP_API_KEY", "upstream-key")
    monkeypatch.setattr(oap_client, "OCR_API_URL", "http://ocr.test/ocr")
    monkeypatch.setattr(oap_client, "http_client", client)
    try:
        yield recorder
    finally:
        client.close()
