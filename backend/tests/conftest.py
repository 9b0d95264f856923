"""Shared pytest fixtures for test suite"""
import os
import sys
import time
from pathlib import Path
from typing import Callable, Generator

import httpx
import pytest
from cryptography.fernet import Fernet

# Settings are read at import time, so the test environment goes in first
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("APP_URL", "http://localhost:3000")
os.environ.setdefault("BACKEND_URL", "http://localhost:8000")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("FACEBOOK_APP_ID", "fb-app-id")
os.environ.setdefault("FACEBOOK_APP_SECRET", "fb-app-secret")
os.environ.setdefault("TWITTER_CLIENT_ID", "tw-client-id")
os.environ.setdefault("TWITTER_CLIENT_SECRET", "tw-client-secret")
os.environ.setdefault("TWITTER_API_KEY", "tw-consumer-key")
os.environ.setdefault("TWITTER_API_SECRET", "tw-consumer-secret")
os.environ.setdefault("TIKTOK_CLIENT_KEY", "tt-client-key")
os.environ.setdefault("TIKTOK_CLIENT_SECRET", "tt-client-secret")
os.environ.setdefault("AMAZON_CLIENT_ID", "amzn-client-id")
os.environ.setdefault("AMAZON_CLIENT_SECRET", "amzn-client-secret")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.api.oauth import get_oauth_controller
from app.core.config import SESSION_COOKIE_NAME
from app.db import redis as redis_module
from app.db.helpers import create_user
from app.db.session import get_db
from app.models import Base
from app.models.user import User
from app.schemas.session import AppSession, SessionUser
from app.services.oauth_service import OAuthFlowController
from app.services.rate_limiter import PlatformRateLimiter, get_platform_rate_limiter
from app.services.session_service import SessionCodec, SessionService


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_SECRET = os.environ["SESSION_SECRET"]


class FakeClock:
    """Settable clock (epoch seconds) for codec, session and limiter tests"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Shared Redis client replaced by fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    previous = redis_module._client
    redis_module.set_redis_client(fake_redis)
    try:
        yield fake_redis
    finally:
        redis_module.set_redis_client(previous)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(time.time())


@pytest.fixture
def session_service(clock) -> SessionService:
    """Session service signing with the application secret, so cookies it writes are accepted by the app"""
    return SessionService(SessionCodec(TEST_SECRET, clock=clock), clock=clock)


@pytest.fixture
def rate_limiter(clock) -> PlatformRateLimiter:
    return PlatformRateLimiter(clock=clock)


@pytest.fixture
def provider_api():
    """Routes provider HTTP calls to per-URL handlers

    Register handlers with ``provider_api.add(method, url, handler_or_response)``.
    Every request is recorded in ``provider_api.calls``.
    """
    return ProviderAPI()


class ProviderAPI:
    def __init__(self):
        self.handlers = {}
        self.calls = []

    def add(self, method: str, url: str, response) -> None:
        self.handlers[(method.upper(), url)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        url = str(request.url).split("?")[0]
        response = self.handlers.get((request.method, url))
        if response is None:
            return httpx.Response(404, json={"error": f"no mock for {request.method} {url}"})
        if callable(response):
            return response(request)
        return response

    def client_factory(self) -> Callable[[], httpx.AsyncClient]:
        transport = httpx.MockTransport(self.handler)
        return lambda: httpx.AsyncClient(transport=transport)

    def called(self, method: str, url: str) -> bool:
        return any(r.method == method and str(r.url).split("?")[0] == url for r in self.calls)


@pytest.fixture
def controller(session_service, provider_api, clock) -> OAuthFlowController:
    return OAuthFlowController(
        sessions=session_service,
        http_client_factory=provider_api.client_factory(),
        clock=clock
    )


@pytest.fixture(scope="function")
def client(db_session: Session, controller, rate_limiter, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked provider APIs and a fresh rate limiter"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_oauth_controller] = lambda: controller
    app.dependency_overrides[get_platform_rate_limiter] = lambda: rate_limiter

    try:
        with TestClient(app, follow_redirects=False) as test_client:
            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    return create_user(email="owner@example.com", username="owner", db=db_session)


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    return create_user(email="other@example.com", username="other", db=db_session)


@pytest.fixture
def user_session(test_user: User) -> AppSession:
    """Authenticated session for test_user"""
    return AppSession(
        user_id=test_user.id,
        user=SessionUser(email=test_user.email, username=test_user.username)
    )


@pytest.fixture
def authenticated_client(client: TestClient, session_service: SessionService, user_session: AppSession) -> TestClient:
    """Client carrying a signed session cookie for test_user"""
    client.cookies.set(SESSION_COOKIE_NAME, session_service.codec.encode(user_session))
    return client


def session_from_response(response, session_service: SessionService) -> AppSession:
    """Decode the session cookie set by a response"""
    session = session_service.codec.decode(response.cookies.get(SESSION_COOKIE_NAME))
    assert session is not None, "response should set a valid session cookie"
    return session


def carry_session(client: TestClient, response) -> None:
    """Keep only the session cookie the last response set, as a browser would"""
    token = response.cookies.get(SESSION_COOKIE_NAME)
    client.cookies.clear()
    if token:
        client.cookies.set(SESSION_COOKIE_NAME, token)
