import os
from decimal import Decimal
from pathlib import Path

# Module-level engines in the service entry points must not need a real Postgres
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from fakeredis import aioredis as fake_aioredis
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.inventory.app import commands as inventory_commands
from services.inventory.app import main as inventory_main
from services.inventory.app import schema as inventory_schema
from services.order.app import schema as order_schema
from services.order.app.inventory_client import InventoryClient
from services.order.app.orchestrator import OrderSagaOrchestrator
from services.order.app.store import OrderStore
from services.shared.messaging import RedisStreamChannel

STOCK_UPDATES_TOPIC = "stock-updates"


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = Path(item.fspath)
        if "/inventory/" in str(test_path):
            item.add_marker(pytest.mark.inventory)
        elif "/order/" in str(test_path):
            item.add_marker(pytest.mark.order)
        elif "/shared/" in str(test_path):
            item.add_marker(pytest.mark.shared)


# ── Inventory Service ────────────────────────────


@pytest.fixture
async def inventory_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await inventory_schema.init_db(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def inventory_app(inventory_sessions):
    async def _session():
        async with inventory_sessions() as session:
            yield session

    inventory_main.app.dependency_overrides[inventory_main.get_session] = _session
    yield inventory_main.app
    inventory_main.app.dependency_overrides.clear()


@pytest.fixture
async def inventory_http(inventory_app):
    transport = httpx.ASGITransport(app=inventory_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://inventory") as client:
        yield client


@pytest.fixture
def make_product(inventory_sessions):
    """Helper: create a product directly in the inventory store."""

    async def _make(name="Widget", unit_price="10.00", quantity_on_hand=10, description=""):
        async with inventory_sessions() as session:
            return await inventory_commands.create_product(
                session,
                name,
                Decimal(unit_price),
                quantity_on_hand,
                description=description,
            )

    return _make


@pytest.fixture
def stock_of(inventory_sessions):
    """Helper: current quantity_on_hand of a product."""
    from services.inventory.app import queries

    async def _stock(product_id):
        async with inventory_sessions() as session:
            product = await queries.get_product(session, product_id)
            return product.quantity_on_hand

    return _stock


# ── Message Channel ──────────────────────────────


@pytest.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def channel(redis):
    channel = RedisStreamChannel(redis, group="inventory-service", consumer="test-1", max_deliveries=3)
    await channel.ensure_group(STOCK_UPDATES_TOPIC)
    return channel


# ── Order Service ────────────────────────────────


@pytest.fixture
async def order_sessions(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await order_schema.init_db(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def order_store(order_sessions):
    return OrderStore(order_sessions)


@pytest.fixture
def inventory_client(inventory_http):
    return InventoryClient(client=inventory_http)


@pytest.fixture
def orchestrator(inventory_client, order_store, channel):
    return OrderSagaOrchestrator(
        inventory_client, order_store, channel, stock_updates_topic=STOCK_UPDATES_TOPIC
    )
