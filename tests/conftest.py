"""
Pytest configuration and fixtures.
"""
import asyncio
import uuid
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from hotspot_bridge.api.dependencies import get_coordinator
from hotspot_bridge.api.main import app
from hotspot_bridge.config import Settings
from hotspot_bridge.core.coordinator import AccessHandoffCoordinator
from hotspot_bridge.core.pull_queue import InMemoryPullQueue
from hotspot_bridge.core.state_machine import PaymentStateMachine
from hotspot_bridge.database.connection import get_db
from hotspot_bridge.database.models import Base, Transaction
from hotspot_bridge.integrations.daraja_client import PaymentGateway, StkPushResult


class FakeGateway(PaymentGateway):
    """In-process payment provider that hands out scripted checkout IDs."""

    def __init__(self, checkout_ids: Optional[List[str]] = None) -> None:
        self.checkout_ids = list(checkout_ids or [])
        self.calls: List[Tuple[str, int, str]] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def stk_push(self, phone: str, amount: int, plan: str) -> StkPushResult:
        self.calls.append((phone, amount, plan))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.checkout_ids:
            checkout_id = self.checkout_ids.pop(0)
        else:
            checkout_id = f"ws_CO_{uuid.uuid4().hex[:16]}"
        return StkPushResult(checkout_request_id=checkout_id, merchant_request_id="29115-34620561-1")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        daraja_consumer_key="test_consumer_key",
        daraja_consumer_secret="test_consumer_secret",
        daraja_passkey="test_passkey",
        daraja_callback_url="https://hotspot.example.com/callback",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'hotspot_test.db'}",
        gateway_timeout_seconds=0.5,
        app_name="hotspot-bridge-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def session_factory(test_settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory over a fresh SQLite file; one connection per session."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def pull_queue() -> InMemoryPullQueue:
    return InMemoryPullQueue()


@pytest.fixture
def state_machine(gateway: FakeGateway, test_settings: Settings) -> PaymentStateMachine:
    return PaymentStateMachine(gateway, settings=test_settings)


@pytest.fixture
def coordinator(
    state_machine: PaymentStateMachine, pull_queue: InMemoryPullQueue
) -> AccessHandoffCoordinator:
    return AccessHandoffCoordinator(state_machine, pull_queue)


@pytest.fixture
def transaction_count(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], Awaitable[int]]:
    """Count transaction rows from a separate session."""

    async def count() -> int:
        async with session_factory() as session:
            result = await session.execute(select(func.count()).select_from(Transaction))
            return int(result.scalar_one())

    return count


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    coordinator: AccessHandoffCoordinator,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client bound to the app with the test database and coordinator."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_coordinator] = lambda: coordinator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def callback_payload() -> Callable[..., dict]:
    """Build a Daraja STK callback envelope."""

    def build(
        checkout_id: str,
        result_code: int = 0,
        receipt: Optional[str] = "RCX1",
        amount: int = 10,
        phone: int = 254712345678,
    ) -> dict:
        stk_callback: dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_id,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user",
        }
        if result_code == 0:
            items: List[dict] = [
                {"Name": "Amount", "Value": amount},
                {"Name": "PhoneNumber", "Value": phone},
            ]
            if receipt is not None:
                items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
            stk_callback["CallbackMetadata"] = {"Item": items}
        return {"Body": {"stkCallback": stk_callback}}

    return build
