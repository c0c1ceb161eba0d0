"""
Shared fixtures for the IAM service tests.

Every test gets its own SQLite database file, so concurrent requests in a
test use separate connections the way they would against PostgreSQL.
"""
import os

# Module-level app in iam_service.main reads these at import
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./iam_test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-0123456789-abcdefghijklmnopqrstuvwxyz")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import timedelta
from typing import List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from iam_service.auth.errors import Result
from iam_service.auth.models import AccountStatus, Role, VerificationPurpose
from iam_service.auth.services import build_auth_services
from iam_service.auth.transactions import AccountStore
from iam_service.auth.verification import VerificationMessage
from iam_service.base_microservice import create_engine_and_sessions
from iam_service.config import Settings
from iam_service.main import create_app

TEST_SECRET = "test-secret-key-0123456789-abcdefghijklmnopqrstuvwxyz"
PASSWORD = "Str0ngPassw0rd"


class RecordingNotifier:
    """Keeps delivered messages so tests can read the codes."""

    def __init__(self):
        self.messages: List[VerificationMessage] = []

    async def deliver(self, message: VerificationMessage) -> None:
        self.messages.append(message)

    def last(self, purpose: Optional[VerificationPurpose] = None, account_id: Optional[int] = None) -> VerificationMessage:
        for message in reversed(self.messages):
            if purpose is not None and message.purpose != purpose:
                continue
            if account_id is not None and message.account_id != account_id:
                continue
            return message
        raise AssertionError(f"no {purpose} message for account {account_id}")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'iam.db'}",
        environment="test",
        jwt_secret_key=TEST_SECRET,
        bcrypt_rounds=4,
        verification_cooldown=timedelta(0),
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def store(settings):
    engine, session_factory = create_engine_and_sessions(settings.database_url)
    store = AccountStore(session_factory, engine)
    await store.create_schema()
    yield store
    await store.dispose()


@pytest.fixture
def services(settings, notifier, store):
    return build_auth_services(settings, notifier=notifier, store=store)


@pytest.fixture
def lifecycle(services):
    return services.lifecycle


@pytest.fixture
def app(settings, notifier, store):
    return create_app(settings, notifier=notifier, store=store)


@pytest.fixture
async def client(app):
    """FastAPI test client for the per-test app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_account(services):
    """Factory creating accounts directly, active by default."""
    async def _make(
        username: str,
        role: Role = Role.USER,
        password: str = PASSWORD,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        status: AccountStatus = AccountStatus.ACTIVE,
    ):
        result = await services.lifecycle.provision(
            username,
            email or f"{username}@example.com",
            password,
            role=role,
            status=status,
            phone=phone,
        )
        assert result.ok, result.failure
        return result.value

    return _make


@pytest.fixture
def token_for(services):
    """Bearer header for an account, from a real login."""
    async def _token(username: str, password: str = PASSWORD) -> dict:
        token = (await services.lifecycle.login(username, password)).unwrap()
        return {"Authorization": f"Bearer {token.access_token}"}

    return _token


@pytest.fixture
def run_sql(store):
    """Execute a statement in its own committed transaction."""
    async def _run(statement):
        async def execute(session):
            await session.execute(statement)
            return Result.success()

        result = await store.atomic(execute)
        assert result.ok, result.failure

    return _run
