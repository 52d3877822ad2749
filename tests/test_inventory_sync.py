"""
Tests for webhook-driven synchronization against a real (SQLite) database.
"""

import dataclasses

import pytest
import pytest_asyncio
from sqlalchemy import event, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import create_session_factory, init_models
from app.integrations.base import NormalizedInventory, NormalizedLocation
from app.integrations.shopify.models import LocationWebhook, OrderWebhook, ProductCreateWebhook
from app.integrations.shopify.transformer import ShopifyTransformer
from app.models.database import (
    Inventory,
    ProcessedEvent,
    Product,
    ProductAlert,
    SalesRecord,
    Shop,
    Variant,
    Warehouse,
)
from app.models.status import AlertSeverity, AlertType, ProductStatus
from app.services.inventory_sync import InventorySyncService
from app.utils.ttl_cache import TTLCache

from conftest import LOCATION_GID, SECOND_LOCATION_GID, SHOP_DOMAIN


def normalize_product(payload):
    return ShopifyTransformer.normalize_product(ProductCreateWebhook(**payload))


def normalize_order(payload):
    return ShopifyTransformer.normalize_order(OrderWebhook(**payload))


def level(inventory_item: int, location_gid: str, available: int | None) -> NormalizedInventory:
    return NormalizedInventory(
        inventory_item_id=f"gid://shopify/InventoryItem/{inventory_item}",
        location_id=location_gid,
        available=available,
    )


async def rows(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(model))).scalars().all()


async def product_by_gid(session_factory, gid):
    async with session_factory() as session:
        return (await session.execute(select(Product).where(Product.shopify_id == gid))).scalar_one_or_none()


async def active_alerts(session_factory):
    async with session_factory() as session:
        result = await session.execute(
            select(ProductAlert).where(ProductAlert.is_active.is_(True)).order_by(ProductAlert.created_at)
        )
        return result.scalars().all()


class TestSyncProduct:
    @pytest.mark.asyncio
    async def test_creates_product_with_variants(self, sync_service, session_factory, shop, product_payload):
        outcome = await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        assert outcome.status == "success"
        product = await product_by_gid(session_factory, "gid://shopify/Product/111")
        assert outcome.product_ids == [product.id]
        assert product.shop_id == shop.id
        assert product.vendor == "Acme"
        assert product.tags == ["running", "outdoor"]
        assert product.status is ProductStatus.HEALTHY
        assert product.sales_velocity is None
        assert product.stockout_days is None
        assert product.trending is False

        variants = await rows(session_factory, Variant)
        assert sorted((v.shopify_id, v.inventory_quantity) for v in variants) == [
            ("gid://shopify/ProductVariant/211", 100),
            ("gid://shopify/ProductVariant/212", 50),
        ]

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, sync_service, session_factory, shop, product_payload):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        assert len(await rows(session_factory, Product)) == 1
        assert len(await rows(session_factory, Variant)) == 2
        assert await rows(session_factory, ProductAlert) == []

    @pytest.mark.asyncio
    async def test_missing_vendor_defaults_to_unknown(self, sync_service, session_factory, shop, product_payload):
        del product_payload["vendor"]

        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        product = await product_by_gid(session_factory, "gid://shopify/Product/111")
        assert product.vendor == "Unknown"

    @pytest.mark.asyncio
    async def test_removed_variants_are_deleted_with_their_inventory(
        self, sync_service, session_factory, shop, product_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))
        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(312, LOCATION_GID, 50))

        product_payload["variants"] = product_payload["variants"][:1]
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        variants = await rows(session_factory, Variant)
        assert [v.shopify_id for v in variants] == ["gid://shopify/ProductVariant/211"]
        assert await rows(session_factory, Inventory) == []

    @pytest.mark.asyncio
    async def test_payload_without_variant_list_keeps_variants(
        self, sync_service, session_factory, shop, product_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        renamed = {"id": 111, "title": "Trail Runner 2"}
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(renamed))

        product = await product_by_gid(session_factory, "gid://shopify/Product/111")
        assert product.title == "Trail Runner 2"
        assert product.vendor == "Acme"
        assert len(await rows(session_factory, Variant)) == 2

    @pytest.mark.asyncio
    async def test_located_variant_ignores_payload_quantity(
        self, sync_service, session_factory, shop, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))
        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 30))

        single_variant_payload["variants"][0]["inventory_quantity"] = 999
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))

        (variant,) = await rows(session_factory, Variant)
        assert variant.inventory_quantity == 30

    @pytest.mark.asyncio
    async def test_category_is_stored(self, sync_service, session_factory, shop, product_payload):
        product_payload["category"] = {"name": "Shoes", "full_name": "Apparel & Accessories > Shoes"}

        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product({"id": 111, "title": "Trail Runner"}))

        product = await product_by_gid(session_factory, "gid://shopify/Product/111")
        assert product.category == "Apparel & Accessories > Shoes"

    @pytest.mark.asyncio
    async def test_unknown_shop_is_skipped(self, sync_service, session_factory, shop, product_payload):
        outcome = await sync_service.sync_product("unknown.myshopify.com", normalize_product(product_payload))

        assert outcome.status == "skipped"
        assert outcome.skipped is True
        assert await rows(session_factory, Product) == []

    @pytest.mark.asyncio
    async def test_shop_context_is_cached(self, sync_service, shop, product_payload):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        context = sync_service.shop_cache.get(SHOP_DOMAIN)
        assert context.shop_id == shop.id
        assert context.thresholds.low_stock_threshold_units == 10

        sync_service.invalidate_shop(SHOP_DOMAIN)
        assert sync_service.shop_cache.get(SHOP_DOMAIN) is None


class TestApplyInventoryLevel:
    @pytest.mark.asyncio
    async def test_variant_total_is_sum_of_locations(
        self, sync_service, session_factory, shop, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))

        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 30))
        outcome = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, SECOND_LOCATION_GID, 5))

        assert outcome.status == "success"
        (variant,) = await rows(session_factory, Variant)
        assert variant.inventory_quantity == 35
        levels = await rows(session_factory, Inventory)
        assert sorted(level.quantity for level in levels) == [5, 30]

    @pytest.mark.asyncio
    async def test_missing_available_counts_as_zero(
        self, sync_service, session_factory, shop, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))

        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, None))

        (variant,) = await rows(session_factory, Variant)
        assert variant.inventory_quantity == 0
        product = await product_by_gid(session_factory, "gid://shopify/Product/121")
        assert product.status is ProductStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_status_transitions_raise_and_resolve_alerts(
        self, sync_service, session_factory, shop, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))

        outcome = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 8))
        assert outcome.alerts_created == 1
        (alert,) = await active_alerts(session_factory)
        assert alert.type is AlertType.LOW_STOCK
        assert alert.severity is AlertSeverity.WARNING
        assert alert.previous_status is ProductStatus.HEALTHY

        # Same level again: no transition, no new alert
        outcome = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 8))
        assert outcome.alerts_created == 0
        assert len(await rows(session_factory, ProductAlert)) == 1

        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 2))
        alerts = await active_alerts(session_factory)
        assert [a.type for a in alerts] == [AlertType.LOW_STOCK, AlertType.CRITICAL_STOCK]
        assert alerts[1].severity is AlertSeverity.CRITICAL

        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 50))
        assert await active_alerts(session_factory) == []
        product = await product_by_gid(session_factory, "gid://shopify/Product/121")
        assert product.status is ProductStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_replayed_level_is_idempotent(
        self, sync_service, session_factory, shop, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))
        async with session_factory() as session:
            async with session.begin():
                await session.execute(update(Shop).where(Shop.id == shop.id).values(low_stock_threshold=50))
        sync_service.invalidate_shop(SHOP_DOMAIN)

        first = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 30))
        second = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 30))

        assert first.status == second.status == "success"
        assert first.alerts_created + second.alerts_created == 1
        assert len(await rows(session_factory, Inventory)) == 1
        (variant,) = await rows(session_factory, Variant)
        assert variant.inventory_quantity == 30
        assert len(await rows(session_factory, ProductAlert)) == 1

    @pytest.mark.asyncio
    async def test_unknown_inventory_item_is_skipped(self, sync_service, session_factory, shop):
        outcome = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(999, LOCATION_GID, 3))

        assert outcome.status == "skipped"
        assert await rows(session_factory, Inventory) == []

    @pytest.mark.asyncio
    async def test_unknown_location_is_skipped(
        self, sync_service, session_factory, shop, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))

        outcome = await sync_service.apply_inventory_level(
            SHOP_DOMAIN, level(321, "gid://shopify/Location/404", 3)
        )

        assert outcome.status == "skipped"
        (variant,) = await rows(session_factory, Variant)
        assert variant.inventory_quantity == 40


class TestUpsertWarehouse:
    @pytest.mark.asyncio
    async def test_location_webhook_enables_inventory_updates(
        self, sync_service, session_factory, shop_without_warehouses, single_variant_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))
        location = ShopifyTransformer.normalize_location(
            LocationWebhook(id=9, name="Back Room", address1="Main St 1", city="Berlin", country_code="DE")
        )

        created = await sync_service.upsert_warehouse(SHOP_DOMAIN, location)
        outcome = await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, "gid://shopify/Location/9", 2))

        assert created.status == "success"
        assert outcome.status == "success"
        (warehouse,) = await rows(session_factory, Warehouse)
        assert warehouse.shop_id == shop_without_warehouses.id
        assert warehouse.shopify_location_gid == "gid://shopify/Location/9"
        assert warehouse.location == "Main St 1, Berlin, DE"
        (variant,) = await rows(session_factory, Variant)
        assert variant.inventory_quantity == 2

    @pytest.mark.asyncio
    async def test_location_update_renames_in_place(self, sync_service, session_factory, shop):
        renamed = NormalizedLocation(location_id=LOCATION_GID, name="Main (renamed)")

        outcome = await sync_service.upsert_warehouse(SHOP_DOMAIN, renamed)

        assert outcome.message == "Updated warehouse Main (renamed)"
        warehouses = {w.shopify_location_gid: w for w in await rows(session_factory, Warehouse)}
        assert len(warehouses) == 2
        assert warehouses[LOCATION_GID].name == "Main (renamed)"
        assert warehouses[LOCATION_GID].location == "Berlin"

    @pytest.mark.asyncio
    async def test_unlinked_warehouse_is_adopted_by_name(
        self, sync_service, session_factory, shop_without_warehouses
    ):
        async with session_factory() as session:
            async with session.begin():
                session.add(Warehouse(shop_id=shop_without_warehouses.id, name="Depot", location="Leipzig"))

        await sync_service.upsert_warehouse(
            SHOP_DOMAIN, NormalizedLocation(location_id="gid://shopify/Location/77", name="Depot")
        )

        (warehouse,) = await rows(session_factory, Warehouse)
        assert warehouse.shopify_location_gid == "gid://shopify/Location/77"
        assert warehouse.location == "Leipzig"

    @pytest.mark.asyncio
    async def test_unknown_shop_is_skipped(self, sync_service, session_factory):
        outcome = await sync_service.upsert_warehouse(
            "unknown.myshopify.com", NormalizedLocation(location_id=LOCATION_GID, name="Main")
        )

        assert outcome.status == "skipped"
        assert await rows(session_factory, Warehouse) == []


class TestRecordOrder:
    @pytest.mark.asyncio
    async def test_order_raises_velocity_once(
        self, sync_service, session_factory, shop, single_variant_payload, order_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))

        outcome = await sync_service.record_order(SHOP_DOMAIN, normalize_order(order_payload))
        assert outcome.status == "success"

        replay = await sync_service.record_order(SHOP_DOMAIN, normalize_order(order_payload))
        assert replay.status == "skipped"

        product = await product_by_gid(session_factory, "gid://shopify/Product/121")
        assert product.sales_velocity == pytest.approx(3 / 30)
        assert product.stockout_days == pytest.approx(40 / (3 / 30))

        (record,) = await rows(session_factory, SalesRecord)
        assert record.units_sold == 3
        assert record.revenue == pytest.approx(36.0)
        assert record.stock_level == 40
        assert len(await rows(session_factory, ProcessedEvent)) == 1

    @pytest.mark.asyncio
    async def test_unresolvable_lines_are_ignored(
        self, sync_service, session_factory, shop, single_variant_payload, order_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))
        order_payload["line_items"] = [
            {"id": 1, "product_id": 555, "variant_id": 556, "quantity": 2, "price": "5.00"},
            {"id": 2, "product_id": None, "variant_id": None, "quantity": 1, "price": "1.00"},
        ]

        outcome = await sync_service.record_order(SHOP_DOMAIN, normalize_order(order_payload))

        assert outcome.status == "success"
        assert outcome.product_ids == []
        assert await rows(session_factory, SalesRecord) == []

    @pytest.mark.asyncio
    async def test_paid_order_refreshes_trending(
        self, sync_service, session_factory, shop, single_variant_payload, order_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))
        async with session_factory() as session:
            async with session.begin():
                product = (await session.execute(select(Product))).scalar_one()
                product.sales_velocity = 60.0

        outcome = await sync_service.record_paid_order(SHOP_DOMAIN, normalize_order(order_payload))
        replay = await sync_service.record_paid_order(SHOP_DOMAIN, normalize_order(order_payload))

        assert outcome.status == "success"
        assert replay.status == "skipped"
        product = await product_by_gid(session_factory, "gid://shopify/Product/121")
        assert product.trending is True
        assert product.sales_velocity == 60.0
        (record,) = await rows(session_factory, SalesRecord)
        assert record.topic == "orders/paid"


class TestDeletion:
    @pytest.mark.asyncio
    async def test_delete_product_removes_everything(
        self, sync_service, session_factory, shop, single_variant_payload, order_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(single_variant_payload))
        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(321, LOCATION_GID, 2))
        await sync_service.record_order(SHOP_DOMAIN, normalize_order(order_payload))

        outcome = await sync_service.delete_product(SHOP_DOMAIN, "gid://shopify/Product/121")

        assert outcome.status == "success"
        for model in (Product, Variant, Inventory, ProductAlert, SalesRecord):
            assert await rows(session_factory, model) == []
        assert len(await rows(session_factory, Warehouse)) == 2

        again = await sync_service.delete_product(SHOP_DOMAIN, "gid://shopify/Product/121")
        assert again.status == "skipped"

    @pytest.mark.asyncio
    async def test_remove_shop_deletes_all_shop_data(
        self, sync_service, session_factory, shop, product_payload, order_payload
    ):
        await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))
        await sync_service.apply_inventory_level(SHOP_DOMAIN, level(311, LOCATION_GID, 1))
        assert sync_service.shop_cache.get(SHOP_DOMAIN) is not None

        outcome = await sync_service.remove_shop(SHOP_DOMAIN)

        assert outcome.status == "success"
        for model in (Shop, Warehouse, Product, Variant, Inventory, ProductAlert):
            assert await rows(session_factory, model) == []
        assert sync_service.shop_cache.get(SHOP_DOMAIN) is None

        # Events arriving after uninstall find no shop
        skipped = await sync_service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))
        assert skipped.status == "skipped"

    @pytest.mark.asyncio
    async def test_remove_unknown_shop_is_skipped(self, sync_service):
        outcome = await sync_service.remove_shop("gone.myshopify.com")

        assert outcome.status == "skipped"


class TestStaleShopContext:
    """Shop deleted and re-created by another process while its context is cached."""

    @pytest_asyncio.fixture
    async def fk_session_factory(self):
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        await init_models(engine)
        yield create_session_factory(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_foreign_key_failure_reloads_shop_and_applies(self, fk_session_factory, product_payload):
        async with fk_session_factory() as session:
            async with session.begin():
                shop = Shop(shop=SHOP_DOMAIN, low_stock_threshold=10)
                session.add(shop)
        service = InventorySyncService(session_factory=fk_session_factory, shop_cache=TTLCache(60))
        await service.upsert_warehouse(SHOP_DOMAIN, NormalizedLocation(location_id=LOCATION_GID, name="Main"))
        cached = service.shop_cache.get(SHOP_DOMAIN)
        service.shop_cache.put(SHOP_DOMAIN, dataclasses.replace(cached, shop_id="deleted-shop"))

        outcome = await service.sync_product(SHOP_DOMAIN, normalize_product(product_payload))

        assert outcome.status == "success"
        product = await product_by_gid(fk_session_factory, "gid://shopify/Product/111")
        assert product.shop_id == shop.id
        assert service.shop_cache.get(SHOP_DOMAIN).shop_id == shop.id

    @pytest.mark.asyncio
    async def test_other_integrity_errors_are_not_retried(self, sync_service, shop, monkeypatch):
        calls = []

        async def failing_upsert(session, shop_id, location):
            calls.append(shop_id)
            raise IntegrityError("UPDATE warehouses", {}, Exception("CHECK constraint failed"))

        monkeypatch.setattr("app.services.inventory_sync.upsert_warehouse_row", failing_upsert)

        with pytest.raises(IntegrityError):
            await sync_service.upsert_warehouse(SHOP_DOMAIN, NormalizedLocation(location_id=LOCATION_GID, name="Main"))
        assert calls == [shop.id]
