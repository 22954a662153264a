"""
Pytest configuration for token_broker. Every broker gets its own in-memory SQLite DB
and the upstream provider is always mocked at token_broker.exchange.httpx.post.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from token_broker.broker import Broker
from token_broker.config import BrokerConfig
from token_broker.main import create_app
from token_broker.models import AuditLog

ORIGIN = "https://app.example.com"
SIGNING_KEY = "test-state-signing-key-0123456789abcdef"
CLIENT_SECRET = "s3cr3t-client-value"
TOKEN_ENDPOINT = "https://provider.example/oauth2/token"
AUTHORIZE_ENDPOINT = "https://provider.example/oauth2/authorize"
REDIRECT_URI = "https://app.example.com/callback.html"


class MockResponse:
    def __init__(self, status_code: int, body=None):
        self.status_code = status_code
        self._body = body
        self.headers = {"content-type": "application/json"} if body is not None else {}

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


@pytest.fixture
def provider_response():
    """Factory for fake token endpoint responses."""
    return MockResponse


@pytest.fixture
def config() -> BrokerConfig:
    return BrokerConfig(
        client_id="broker-client",
        client_secret=CLIENT_SECRET,
        state_signing_key=SIGNING_KEY,
        allowed_origin=ORIGIN,
        redirect_uri=REDIRECT_URI,
        token_endpoint=TOKEN_ENDPOINT,
        authorize_endpoint=AUTHORIZE_ENDPOINT,
        scope="com.example.accounting",
        database_url="sqlite:///:memory:",
        rate_limit_per_minute=0,
    )


@pytest.fixture
def broker(config) -> Broker:
    return Broker.from_config(config)


@pytest.fixture
def client(broker) -> TestClient:
    return TestClient(create_app(broker=broker))


def audit_events(broker: Broker, event_type: str | None = None) -> list[AuditLog]:
    """Audit rows written by broker, most recent first."""
    db = broker.audit._session_factory()
    try:
        q = select(AuditLog).order_by(AuditLog.id.desc())
        if event_type:
            q = q.where(AuditLog.event_type == event_type)
        return list(db.execute(q).scalars().all())
    finally:
        db.close()
