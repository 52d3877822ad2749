"""
Webhook-driven synchronization of the local product mirror.

Every public method is one unit of work: it opens a single transaction that
applies the event, recomputes the affected products' metrics and writes any
alerts, so readers never see inventory updated with a stale status. Events are
keyed by Shopify's stable identifiers and applied as upserts; order events,
which increment counters, are recorded in ``processed_events`` so a
redelivery is a no-op.

Local data gaps (unknown shop, product, variant or warehouse) are logged and
reported as skipped outcomes rather than errors, so Shopify does not retry
deliveries that can never succeed.
"""
import functools
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import get_session_factory
from app.integrations.base import (
    NormalizedInventory,
    NormalizedLocation,
    NormalizedOrder,
    NormalizedProduct,
)
from app.models.database import (
    Inventory,
    NotificationSetting,
    ProcessedEvent,
    Product,
    ProductAlert,
    SalesRecord,
    Shop,
    Variant,
    Warehouse,
    utcnow,
)
from app.models.status import ProductStatus
from app.services.product_metrics import (
    RecalculationResult,
    ShopThresholds,
    is_trending,
    load_shop_thresholds,
    recalculate_product,
)
from app.utils.retry import is_foreign_key_violation, retry_on_transient_db_error
from app.utils.ttl_cache import TTLCache

logger = structlog.get_logger()

ORDERS_CREATE = "orders/create"
ORDERS_PAID = "orders/paid"


@dataclass(frozen=True)
class ShopContext:
    """What the sync needs to know about a shop, cached by domain."""

    shop_id: str
    domain: str
    thresholds: ShopThresholds


@dataclass
class SyncOutcome:
    status: str
    message: str
    product_ids: list[str] = field(default_factory=list)
    alerts_created: int = 0

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "product_ids": self.product_ids,
            "alerts_created": self.alerts_created,
        }


def _skipped(message: str, **log_fields) -> SyncOutcome:
    logger.warning(message, **log_fields)
    return SyncOutcome(status="skipped", message=message)


def _succeeded(message: str, recalculations: list[RecalculationResult]) -> SyncOutcome:
    return SyncOutcome(
        status="success",
        message=message,
        product_ids=[r.product_id for r in recalculations],
        alerts_created=sum(1 for r in recalculations if r.alert is not None),
    )


# Shared so that settings changes made through the API invalidate what webhooks see
shop_context_cache: TTLCache[ShopContext] = TTLCache(settings.shop_context_cache_ttl_seconds)

_transactional = retry_on_transient_db_error(
    max_attempts=settings.db_retry_attempts,
    initial_delay=settings.db_retry_initial_delay_seconds,
    multiplier=settings.retry_backoff_multiplier,
)


def _refresh_stale_shop_context(func):
    """
    Retry a unit of work once with a reloaded shop context.

    The shop context cache is per process, so a shop deleted and re-created
    elsewhere leaves a cached id that no longer exists. The first insert that
    references it fails on its foreign key.
    """

    @functools.wraps(func)
    async def wrapper(self, shop_domain: str, *args, **kwargs):
        try:
            return await func(self, shop_domain, *args, **kwargs)
        except IntegrityError as e:
            if not is_foreign_key_violation(e):
                raise
            logger.warning("Cached shop context is stale, reloading", shop=shop_domain, error=str(e.orig or e))
            self.invalidate_shop(shop_domain)
            return await func(self, shop_domain, *args, **kwargs)

    return wrapper


async def upsert_warehouse_row(
    session: AsyncSession, shop_id: str, location: NormalizedLocation
) -> tuple[Warehouse, bool]:
    """
    Create or update the warehouse of a location, keyed by its location GID.

    A warehouse of the same name that is not linked to any location yet is
    adopted instead of duplicated.
    """
    warehouse = (
        await session.execute(
            select(Warehouse).where(
                Warehouse.shop_id == shop_id,
                Warehouse.shopify_location_gid == location.location_id,
            )
        )
    ).scalar_one_or_none()
    if warehouse is None:
        warehouse = (
            await session.execute(
                select(Warehouse).where(
                    Warehouse.shop_id == shop_id,
                    Warehouse.name == location.name,
                    Warehouse.shopify_location_gid.is_(None),
                )
            )
        ).scalar_one_or_none()

    created = warehouse is None
    if created:
        warehouse = Warehouse(shop_id=shop_id, name=location.name)
        session.add(warehouse)
    warehouse.name = location.name
    warehouse.shopify_location_gid = location.location_id
    if location.address:
        warehouse.location = location.address
    elif created:
        warehouse.location = location.name
    await session.flush()
    return warehouse, created


class InventorySyncService:
    """Applies normalized webhook events to the database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        shop_cache: TTLCache[ShopContext] | None = None,
        velocity_window_days: int | None = None,
    ):
        self._session_factory = session_factory
        self.shop_cache = shop_cache if shop_cache is not None else shop_context_cache
        self.velocity_window_days = velocity_window_days or settings.velocity_window_days

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # Shop context

    async def _get_shop_context(self, session: AsyncSession, shop_domain: str) -> ShopContext | None:
        context = self.shop_cache.get(shop_domain)
        if context is not None:
            return context

        shop = (
            await session.execute(select(Shop).where(Shop.shop == shop_domain))
        ).scalar_one_or_none()
        if shop is None:
            return None

        context = ShopContext(
            shop_id=shop.id,
            domain=shop.shop,
            thresholds=await load_shop_thresholds(session, shop),
        )
        self.shop_cache.put(shop_domain, context)
        return context

    def invalidate_shop(self, shop_domain: str) -> None:
        self.shop_cache.invalidate(shop_domain)

    # Products

    @_refresh_stale_shop_context
    @_transactional
    async def sync_product(self, shop_domain: str, product: NormalizedProduct) -> SyncOutcome:
        """
        Create or update a product and its variants (products/create, products/update).

        Variants missing from the payload are deleted locally when the payload
        carries a variant list.
        """
        async with self.session_factory() as session:
            async with session.begin():
                context = await self._get_shop_context(session, shop_domain)
                if context is None:
                    return _skipped("Shop not found, product sync skipped", shop=shop_domain)

                db_product, created = await self._upsert_product(session, context, product)
                if product.variants is not None:
                    await self._sync_variants(session, db_product, product)

                recalculation = await recalculate_product(session, db_product, context.thresholds)

        logger.info(
            "Product synchronized",
            product_id=db_product.id,
            shopify_id=product.source_id,
            created=created,
            status=recalculation.metrics.status.value,
        )
        verb = "Created" if created else "Updated"
        return _succeeded(f"{verb} product {product.title}", [recalculation])

    async def _upsert_product(
        self, session: AsyncSession, context: ShopContext, product: NormalizedProduct
    ) -> tuple[Product, bool]:
        db_product = (
            await session.execute(select(Product).where(Product.shopify_id == product.source_id))
        ).scalar_one_or_none()

        if db_product is None:
            db_product = Product(
                shop_id=context.shop_id,
                shopify_id=product.source_id,
                title=product.title,
                vendor=product.vendor or "Unknown",
                product_type=product.product_type,
                category=product.category,
                tags=product.tags,
                status=ProductStatus.UNKNOWN,
                trending=False,
                sales_velocity=None,
                stockout_days=None,
            )
            session.add(db_product)
            await session.flush()
            return db_product, True

        db_product.title = product.title
        db_product.vendor = product.vendor or db_product.vendor
        db_product.product_type = product.product_type or db_product.product_type
        db_product.category = product.category or db_product.category
        if product.tags:
            db_product.tags = product.tags
        return db_product, False

    async def _sync_variants(
        self, session: AsyncSession, db_product: Product, product: NormalizedProduct
    ) -> None:
        existing = {
            v.shopify_id: v
            for v in (
                await session.execute(select(Variant).where(Variant.product_id == db_product.id))
            ).scalars()
        }
        incoming_ids = {v.source_variant_id for v in product.variants}

        removed_ids = [v.id for gid, v in existing.items() if gid not in incoming_ids]
        if removed_ids:
            await session.execute(delete(Inventory).where(Inventory.variant_id.in_(removed_ids)))
            await session.execute(delete(Variant).where(Variant.id.in_(removed_ids)))
            logger.info(
                "Removed variants no longer on Shopify",
                product_id=db_product.id,
                count=len(removed_ids),
            )

        # Variants with per-location rows take their total from those rows
        located_ids = set(
            (
                await session.execute(
                    select(Inventory.variant_id)
                    .where(Inventory.product_id == db_product.id)
                    .distinct()
                )
            ).scalars()
        )

        for incoming in product.variants:
            variant = existing.get(incoming.source_variant_id)
            if variant is None:
                session.add(
                    Variant(
                        product_id=db_product.id,
                        shopify_id=incoming.source_variant_id,
                        title=incoming.title,
                        sku=incoming.sku,
                        price=incoming.price,
                        inventory_quantity=incoming.inventory_quantity,
                        inventory_item_id=incoming.inventory_item_id,
                    )
                )
                continue

            variant.title = incoming.title or variant.title
            variant.sku = incoming.sku or variant.sku
            if incoming.price is not None:
                variant.price = incoming.price
            variant.inventory_item_id = incoming.inventory_item_id or variant.inventory_item_id
            if variant.id not in located_ids and incoming.inventory_quantity is not None:
                variant.inventory_quantity = incoming.inventory_quantity

        await session.flush()

    @_refresh_stale_shop_context
    @_transactional
    async def delete_product(self, shop_domain: str, product_gid: str) -> SyncOutcome:
        """Delete a product with its variants, inventory, alerts and sales records."""
        async with self.session_factory() as session:
            async with session.begin():
                context = await self._get_shop_context(session, shop_domain)
                if context is None:
                    return _skipped("Shop not found, product delete skipped", shop=shop_domain)

                db_product = (
                    await session.execute(
                        select(Product).where(
                            Product.shopify_id == product_gid,
                            Product.shop_id == context.shop_id,
                        )
                    )
                ).scalar_one_or_none()
                if db_product is None:
                    return _skipped("Product not found for deletion", shopify_id=product_gid)

                await self._delete_products(session, [db_product.id])

        logger.info("Product deleted", product_id=db_product.id, shopify_id=product_gid)
        return SyncOutcome(
            status="success",
            message=f"Deleted product {db_product.title}",
            product_ids=[db_product.id],
        )

    @staticmethod
    async def _delete_products(session: AsyncSession, product_ids: list[str]) -> None:
        if not product_ids:
            return
        # Children first so the foreign keys hold without relying on ON DELETE CASCADE
        for model in (Inventory, ProductAlert, SalesRecord, Variant):
            await session.execute(delete(model).where(model.product_id.in_(product_ids)))
        await session.execute(delete(Product).where(Product.id.in_(product_ids)))

    # Inventory

    @_refresh_stale_shop_context
    @_transactional
    async def apply_inventory_level(
        self, shop_domain: str, inventory: NormalizedInventory
    ) -> SyncOutcome:
        """
        Set the quantity of one variant at one location (inventory_levels/update).

        The variant's total is re-derived from all of its location rows before
        the product is recalculated.
        """
        async with self.session_factory() as session:
            async with session.begin():
                context = await self._get_shop_context(session, shop_domain)
                if context is None:
                    return _skipped("Shop not found, inventory update skipped", shop=shop_domain)

                variant = (
                    await session.execute(
                        select(Variant)
                        .join(Product, Product.id == Variant.product_id)
                        .where(
                            Variant.inventory_item_id == inventory.inventory_item_id,
                            Product.shop_id == context.shop_id,
                        )
                    )
                ).scalar_one_or_none()
                if variant is None:
                    return _skipped(
                        "Variant not found for inventory item",
                        inventory_item_id=inventory.inventory_item_id,
                    )

                warehouse = (
                    await session.execute(
                        select(Warehouse).where(
                            Warehouse.shopify_location_gid == inventory.location_id,
                            Warehouse.shop_id == context.shop_id,
                        )
                    )
                ).scalar_one_or_none()
                if warehouse is None:
                    return _skipped(
                        "Warehouse not found for location", location_id=inventory.location_id
                    )

                quantity = inventory.available or 0
                level = (
                    await session.execute(
                        select(Inventory).where(
                            Inventory.variant_id == variant.id,
                            Inventory.warehouse_id == warehouse.id,
                        )
                    )
                ).scalar_one_or_none()
                if level is None:
                    session.add(
                        Inventory(
                            variant_id=variant.id,
                            product_id=variant.product_id,
                            warehouse_id=warehouse.id,
                            quantity=quantity,
                        )
                    )
                else:
                    level.quantity = quantity
                await session.flush()

                variant.inventory_quantity = (
                    await session.execute(
                        select(func.coalesce(func.sum(Inventory.quantity), 0)).where(
                            Inventory.variant_id == variant.id
                        )
                    )
                ).scalar_one()

                db_product = await session.get(Product, variant.product_id)
                recalculation = await recalculate_product(session, db_product, context.thresholds)

        logger.info(
            "Inventory level applied",
            product_id=variant.product_id,
            variant_id=variant.id,
            location_id=inventory.location_id,
            available=quantity,
            variant_total=variant.inventory_quantity,
        )
        return _succeeded(
            f"Set {quantity} units at {warehouse.name} for {db_product.title}", [recalculation]
        )

    @_refresh_stale_shop_context
    @_transactional
    async def upsert_warehouse(self, shop_domain: str, location: NormalizedLocation) -> SyncOutcome:
        """Create or rename the warehouse of a Shopify location (locations/create, locations/update)."""
        async with self.session_factory() as session:
            async with session.begin():
                context = await self._get_shop_context(session, shop_domain)
                if context is None:
                    return _skipped("Shop not found, location skipped", shop=shop_domain)

                warehouse, created = await upsert_warehouse_row(session, context.shop_id, location)

        logger.info(
            "Warehouse synchronized",
            warehouse_id=warehouse.id,
            location_id=location.location_id,
            created=created,
        )
        verb = "Created" if created else "Updated"
        return SyncOutcome(status="success", message=f"{verb} warehouse {location.name}")

    # Orders

    async def _mark_processed(
        self, session: AsyncSession, context: ShopContext, topic: str, external_id: str
    ) -> bool:
        """Record the event; False when it was already applied."""
        already = (
            await session.execute(
                select(ProcessedEvent.id).where(
                    ProcessedEvent.shop_id == context.shop_id,
                    ProcessedEvent.topic == topic,
                    ProcessedEvent.external_id == external_id,
                )
            )
        ).scalar_one_or_none()
        if already is not None:
            return False

        session.add(ProcessedEvent(shop_id=context.shop_id, topic=topic, external_id=external_id))
        # A concurrent delivery of the same order fails here and is retried as a duplicate
        await session.flush()
        return True

    @_refresh_stale_shop_context
    @_transactional
    async def record_order(self, shop_domain: str, order: NormalizedOrder) -> SyncOutcome:
        """
        Account for a new order (orders/create).

        Each resolvable line raises its product's sales velocity by
        quantity / velocity window days and the product is recalculated.
        """
        async with self.session_factory() as session:
            async with session.begin():
                context = await self._get_shop_context(session, shop_domain)
                if context is None:
                    return _skipped("Shop not found, order skipped", shop=shop_domain)

                if not await self._mark_processed(session, context, ORDERS_CREATE, order.order_id):
                    logger.info("Order already processed", order_id=order.order_id)
                    return SyncOutcome(status="skipped", message=f"Order {order.name} already processed")

                touched: dict[str, Product] = {}
                for line in order.line_items:
                    if not line.product_id or not line.variant_id:
                        continue

                    db_product = touched.get(line.product_id) or (
                        await session.execute(
                            select(Product).where(
                                Product.shopify_id == line.product_id,
                                Product.shop_id == context.shop_id,
                            )
                        )
                    ).scalar_one_or_none()
                    variant = (
                        await session.execute(
                            select(Variant).where(Variant.shopify_id == line.variant_id)
                        )
                    ).scalar_one_or_none()

                    if db_product is None or variant is None:
                        logger.warning(
                            "Product or variant not found for line item",
                            line_item_id=line.line_item_id,
                            title=line.title,
                        )
                        continue

                    velocity = (db_product.sales_velocity or 0) + line.quantity / self.velocity_window_days
                    db_product.sales_velocity = velocity
                    touched[line.product_id] = db_product

                    session.add(
                        SalesRecord(
                            product_id=db_product.id,
                            topic=ORDERS_CREATE,
                            order_id=order.order_id,
                            line_item_id=line.line_item_id,
                            units_sold=line.quantity,
                            revenue=line.quantity * line.price,
                            sales_velocity=velocity,
                            stock_level=variant.inventory_quantity or 0,
                            recorded_at=order.created_at or utcnow(),
                        )
                    )

                recalculations = [
                    await recalculate_product(session, p, context.thresholds)
                    for p in touched.values()
                ]

        logger.info(
            "Order processed",
            order_id=order.order_id,
            lines=len(order.line_items),
            products_updated=len(recalculations),
        )
        return _succeeded(f"Processed order {order.name}", recalculations)

    @_refresh_stale_shop_context
    @_transactional
    async def record_paid_order(self, shop_domain: str, order: NormalizedOrder) -> SyncOutcome:
        """Refresh the trending flag of the products in a paid order (orders/paid)."""
        async with self.session_factory() as session:
            async with session.begin():
                context = await self._get_shop_context(session, shop_domain)
                if context is None:
                    return _skipped("Shop not found, paid order skipped", shop=shop_domain)

                if not await self._mark_processed(session, context, ORDERS_PAID, order.order_id):
                    logger.info("Paid order already processed", order_id=order.order_id)
                    return SyncOutcome(status="skipped", message=f"Order {order.name} already processed")

                updated: list[str] = []
                for line in order.line_items:
                    if not line.product_id:
                        continue

                    db_product = (
                        await session.execute(
                            select(Product).where(
                                Product.shopify_id == line.product_id,
                                Product.shop_id == context.shop_id,
                            )
                        )
                    ).scalar_one_or_none()
                    if db_product is None:
                        logger.warning(
                            "Product not found for paid line item", line_item_id=line.line_item_id
                        )
                        continue

                    trending = is_trending(db_product.sales_velocity, context.thresholds)
                    if trending != db_product.trending:
                        db_product.trending = trending
                        logger.info(
                            "Trending flag changed",
                            product_id=db_product.id,
                            trending=trending,
                            sales_velocity=db_product.sales_velocity,
                        )

                    session.add(
                        SalesRecord(
                            product_id=db_product.id,
                            topic=ORDERS_PAID,
                            order_id=order.order_id,
                            line_item_id=line.line_item_id,
                            units_sold=line.quantity,
                            revenue=line.quantity * line.price,
                            sales_velocity=db_product.sales_velocity or 0,
                            recorded_at=order.created_at or utcnow(),
                        )
                    )
                    if db_product.id not in updated:
                        updated.append(db_product.id)

        return SyncOutcome(
            status="success",
            message=f"Processed paid order {order.name}",
            product_ids=updated,
        )

    # Shops

    @_transactional
    async def remove_shop(self, shop_domain: str) -> SyncOutcome:
        """Delete all data of a shop that uninstalled the app (app/uninstalled)."""
        async with self.session_factory() as session:
            async with session.begin():
                shop = (
                    await session.execute(select(Shop).where(Shop.shop == shop_domain))
                ).scalar_one_or_none()
                if shop is None:
                    self.invalidate_shop(shop_domain)
                    return _skipped("Shop not found during uninstall", shop=shop_domain)

                product_ids = list(
                    (await session.execute(select(Product.id).where(Product.shop_id == shop.id))).scalars()
                )
                await self._delete_products(session, product_ids)
                for model in (Warehouse, NotificationSetting, ProcessedEvent):
                    await session.execute(delete(model).where(model.shop_id == shop.id))
                await session.execute(delete(Shop).where(Shop.id == shop.id))

        self.invalidate_shop(shop_domain)
        logger.info("Shop data deleted after uninstall", shop=shop_domain, products=len(product_ids))
        return SyncOutcome(
            status="success",
            message=f"Deleted data for {shop_domain}",
            product_ids=product_ids,
        )
