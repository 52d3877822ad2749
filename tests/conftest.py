"""
Pytest fixtures for the inventory monitor tests.

Persistence-backed tests run against an in-memory SQLite database (aiosqlite)
with the real ORM models; every test gets a fresh schema.
"""

import base64
import hashlib
import hmac
import json

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import create_session_factory, init_models
from app.models.database import Shop, Warehouse
from app.services.inventory_sync import InventorySyncService, shop_context_cache
from app.utils.ttl_cache import TTLCache

SHOP_DOMAIN = "test-shop.myshopify.com"
WEBHOOK_SECRET = "test-webhook-secret"
LOCATION_GID = "gid://shopify/Location/1001"
SECOND_LOCATION_GID = "gid://shopify/Location/1002"


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def shop(session_factory) -> Shop:
    """A shop with the default low-stock threshold and two locations."""
    async with session_factory() as session:
        async with session.begin():
            shop = Shop(shop=SHOP_DOMAIN, low_stock_threshold=10)
            session.add(shop)
            await session.flush()
            session.add_all(
                [
                    Warehouse(shop_id=shop.id, name="Main", location="Berlin", shopify_location_gid=LOCATION_GID),
                    Warehouse(shop_id=shop.id, name="Overflow", location="Hamburg", shopify_location_gid=SECOND_LOCATION_GID),
                ]
            )
    return shop


@pytest_asyncio.fixture
async def shop_without_warehouses(session_factory) -> Shop:
    """A freshly installed shop: no locations known yet."""
    async with session_factory() as session:
        async with session.begin():
            shop = Shop(shop=SHOP_DOMAIN, low_stock_threshold=10)
            session.add(shop)
    return shop


@pytest.fixture(autouse=True)
def clear_shop_context_cache():
    """The module-level cache is keyed by domain, which every test reuses."""
    shop_context_cache.clear()
    yield
    shop_context_cache.clear()


@pytest.fixture
def sync_service(session_factory) -> InventorySyncService:
    return InventorySyncService(
        session_factory=session_factory,
        shop_cache=TTLCache(60),
        velocity_window_days=30,
    )


# =============================================================================
# SAMPLE PAYLOADS
# =============================================================================

@pytest.fixture
def product_payload() -> dict:
    """products/create payload with two variants."""
    return {
        "id": 111,
        "title": "Trail Runner",
        "vendor": "Acme",
        "product_type": "Shoes",
        "tags": "running, outdoor",
        "variants": [
            {"id": 211, "title": "42", "sku": "TR-42", "price": "89.90", "inventory_quantity": 100, "inventory_item_id": 311},
            {"id": 212, "title": "43", "sku": "TR-43", "price": "89.90", "inventory_quantity": 50, "inventory_item_id": 312},
        ],
    }


@pytest.fixture
def single_variant_payload() -> dict:
    return {
        "id": 121,
        "title": "Water Bottle",
        "vendor": "Acme",
        "variants": [
            {"id": 221, "title": "Default Title", "sku": "WB-1", "price": "12.00", "inventory_quantity": 40, "inventory_item_id": 321},
        ],
    }


@pytest.fixture
def order_payload() -> dict:
    return {
        "id": 9001,
        "name": "#1001",
        "created_at": "2026-01-15T10:00:00Z",
        "line_items": [
            {"id": 5001, "product_id": 121, "variant_id": 221, "title": "Water Bottle", "quantity": 3, "price": "12.00"},
        ],
    }


# =============================================================================
# HELPERS
# =============================================================================

def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Shopify-style base64 HMAC-SHA256 of a raw body."""
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


def webhook_headers(body: bytes, topic: str, secret: str = WEBHOOK_SECRET, shop_domain: str = SHOP_DOMAIN) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop_domain,
        "X-Shopify-Hmac-Sha256": sign(body, secret),
    }


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")
