"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import os

# Must be set before kalypso_api.db.session builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("KALYPSO_JSON_LOGS", "false")
os.environ.setdefault("KALYPSO_AUDIT_SINK", "log")
os.environ.setdefault("BRIDGE_API_KEY", "sk-test-bridge")

import uuid
from typing import Any, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from kalypso_api.audit.sinks import AuditRecord
from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.bridge.client import BridgeClient, BridgeSettings
from kalypso_api.bridge.retry import RetryPolicy
from kalypso_api.db.models import Base, User
from kalypso_api.db.session import get_db

BRIDGE_TEST_URL = "https://bridge.test/v0"


class MemoryAuditSink:
    """Collects audit records in memory."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    def write(self, record: AuditRecord) -> None:
        self.records.append(record)

    def of_type(self, event_type: str) -> list[AuditRecord]:
        return [r for r in self.records if r.event_type == event_type]


class BridgeStub:
    """Canned Bridge responses keyed by (method, path), served through httpx.MockTransport.

    A route may hold a list of responses; they are served in order and the
    last one repeats.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        self.routes.setdefault((method.upper(), path), []).append((status, body))

    def add_error(self, method: str, path: str, exc: Exception) -> None:
        self.routes.setdefault((method.upper(), path), []).append(exc)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v0")
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"message": f"no stub for {request.method} {path}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        status, body = item
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.path.removeprefix("/v0") == path
        ]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_bridge_client(
    stub: BridgeStub,
    *,
    max_retries: int = 0,
    audit_sink: Optional[MemoryAuditSink] = None,
    sleep: Optional[RecordingSleep] = None,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BridgeClient:
    settings = BridgeSettings(
        api_key="sk-test-bridge",
        base_url=BRIDGE_TEST_URL,
        timeout=timeout,
        retry=RetryPolicy(max_retries=max_retries, base_delay=1.0),
    )
    return BridgeClient(
        settings,
        audit_sink=audit_sink,
        transport=transport or httpx.MockTransport(stub.handler),
        sleep=sleep or RecordingSleep(),
    )


@pytest.fixture(scope="function")
def db_session() -> Session:
    """Fresh in-memory SQLite mirror per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def bridge_stub() -> BridgeStub:
    return BridgeStub()


@pytest.fixture
def bridge_client(bridge_stub: BridgeStub) -> BridgeClient:
    return make_bridge_client(bridge_stub)


@pytest.fixture
def user(db_session: Session) -> User:
    """KYC-approved user linked to Bridge customer ``cust_123``."""
    user = User(
        id=str(uuid.uuid4()),
        email="ada@example.com",
        name="Ada Lovelace",
        bridge_customer_id="cust_123",
        kyc_status="approved",
        kyc_tier=2,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def service_factory(bridge_client: BridgeClient, db_session: Session, audit_sink: MemoryAuditSink):
    """Build any BridgeService subclass on the shared test session."""

    def build(cls):
        return cls(bridge_client, db_session, audit=audit_sink)

    return build


@pytest.fixture
def test_client(db_session: Session, bridge_client: BridgeClient, audit_sink: MemoryAuditSink, user: User):
    """TestClient with the test session, the stubbed Bridge client and ``user`` signed in."""
    from kalypso_api.main import create_app

    app = create_app(bridge_client=bridge_client, audit_sink=audit_sink)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture handles it

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthContext(user_id=user.id, email=user.email)
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
