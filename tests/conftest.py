"""Test fixtures."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import WebhookConfig, get_webhook_config
from app.database import Base, get_session_factory
from app.main import app
from app.models import Order
from app.models.returns import Return
from app.services.auth import create_access_token
from app.services.carrier import get_carrier_client
from app.services.errors import ExternalCallFailure
from app.services.gateway import get_refund_gateway, to_minor_units
from app.services.reconciler import Reconciler
from app.services.refunds import RefundOrchestrator
from app.services.transaction_log import TransactionLogger, get_transaction_logger

# Use SQLite for tests (no external DB needed for unit tests)
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"

test_engine = create_async_engine(TEST_DB_URL, echo=False)
test_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ── Fakes for the external services ─────────────────────

class FakeGateway:
    """Refund gateway double: records calls, succeeds unless `error` is set."""

    def __init__(self, status: str = "processed", error: Optional[str] = None):
        self.status = status
        self.error = error
        self.calls: list[dict] = []

    async def create_refund(self, payment_id, amount, receipt, notes=None):
        self.calls.append({"payment_id": payment_id, "amount": amount, "receipt": receipt, "notes": notes})
        if self.error:
            raise ExternalCallFailure(self.error)
        return {
            "id": f"rfnd_{len(self.calls):04d}",
            "entity": "refund",
            "amount": to_minor_units(amount),
            "payment_id": payment_id,
            "receipt": receipt,
            "status": self.status,
            "speed_processed": "normal",
        }


class FakeCarrier:
    """Carrier double returning canned tracking bodies."""

    def __init__(self, body: Optional[dict] = None, error: Optional[str] = None):
        self.body = body or {}
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def _answer(self, kind: str, key: str) -> dict:
        self.calls.append((kind, key))
        if self.error:
            raise ExternalCallFailure(self.error)
        return self.body

    async def track_shipment(self, shipment_id):
        return await self._answer("shipment", shipment_id)

    async def track_order(self, carrier_order_id):
        return await self._answer("order", carrier_order_id)

    async def track_awb(self, awb):
        return await self._answer("awb", awb)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture
def tx_log(tmp_path) -> TransactionLogger:
    return TransactionLogger(str(tmp_path / "transactions.log"))


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return test_session


@pytest.fixture
def refunds(gateway, tx_log) -> RefundOrchestrator:
    return RefundOrchestrator(test_session, gateway, tx_log)


@pytest.fixture
def reconciler(carrier, refunds, tx_log) -> Reconciler:
    return Reconciler(test_session, carrier, refunds, tx_log)


# ── Record factories ────────────────────────────────────

async def create_order(**fields) -> Order:
    values = {
        "order_number": f"ORD{uuid.uuid4().hex[:8].upper()}",
        "status": "pending",
        "customer_name": "Asha Verma",
        "customer_email": "asha@example.com",
        "total_amount": Decimal("2499.00"),
        "payment_method": "online",
        "payment_status": "paid",
        "shipping_status": "pending",
        "tracking_history": [],
        "notes": "",
    }
    values.update(fields)
    async with test_session() as session:
        order = Order(**values)
        session.add(order)
        await session.commit()
        return order


async def create_return(order: Order, **fields) -> Return:
    values = {
        "return_number": f"RET{uuid.uuid4().hex[:8].upper()}",
        "order_id": order.id,
        "status": "requested",
        "status_history": [],
        "items": [{"product_id": "P1", "quantity": 1, "reason": "size", "item_condition": "unused"}],
        "refund_amount": Decimal("2499.00"),
        "refund_details": {},
        "refund_status": "not_started",
        "refund_gateway_data": {},
        "admin_notes": [],
        "pickup_status": "pending",
        "tracking_history": [],
    }
    values.update(fields)
    async with test_session() as session:
        ret = Return(**values)
        session.add(ret)
        await session.commit()
        return ret


async def reload(model, pk):
    async with test_session() as session:
        return await session.get(model, pk)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ── HTTP client ─────────────────────────────────────────

@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig()


@pytest_asyncio.fixture
async def client(gateway, carrier, tx_log, webhook_config) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_session_factory] = lambda: test_session
    app.dependency_overrides[get_refund_gateway] = lambda: gateway
    app.dependency_overrides[get_carrier_client] = lambda: carrier
    app.dependency_overrides[get_transaction_logger] = lambda: tx_log
    app.dependency_overrides[get_webhook_config] = lambda: webhook_config
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    token = create_access_token({"sub": "admin-1", "is_admin": True})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers() -> dict:
    token = create_access_token({"sub": "customer-9", "is_admin": False})
    return {"Authorization": f"Bearer {token}"}
