"""
Whole-product metrics: total inventory, projected stockout horizon and status.

Used after every inventory-affecting webhook and by the bulk reconciliation
across a shop's products.
"""
import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from types import SimpleNamespace

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.database import NotificationSetting, Product, ProductAlert, Shop, Variant
from app.models.status import ProductStatus
from app.services.alerts import (
    StatusTransition,
    build_stock_alert,
    detect_status_transition,
    resolve_stock_alerts,
)
from app.services.product_status import VariantForStatus, calculate_product_status

logger = structlog.get_logger()


@dataclass(frozen=True)
class ShopThresholds:
    """Shop-level thresholds, resolved from notification settings, the shop and defaults."""

    low_stock_threshold_units: int
    critical_stock_threshold_units: int | None = None
    critical_stockout_days: int = 3
    sales_velocity_threshold: float = 50.0


@dataclass(frozen=True)
class ProductMetrics:
    current_total_inventory: int
    stockout_days: float
    status: ProductStatus


@dataclass
class RecalculationResult:
    product_id: str
    metrics: ProductMetrics
    trending: bool
    transition: StatusTransition | None = None
    alert: ProductAlert | None = None


@dataclass(frozen=True)
class BulkRecalculationResult:
    success: bool
    updated_count: int
    message: str
    shop_missing: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "updated_count": self.updated_count,
            "message": self.message,
        }


def resolve_shop_thresholds(
    shop: Shop, notification_setting: NotificationSetting | None = None
) -> ShopThresholds:
    """
    Resolve a shop's thresholds.

    Each value comes from the shop's notification setting when set, then from
    the shop record, then from the configured default.
    """

    def pick(*candidates):
        return next((c for c in candidates if c is not None), None)

    low = pick(
        notification_setting.low_stock_threshold if notification_setting else None,
        shop.low_stock_threshold,
        settings.default_low_stock_threshold,
    )
    critical_units = pick(
        notification_setting.critical_stock_threshold_units if notification_setting else None,
        shop.critical_stock_threshold,
    )
    critical_days = pick(
        notification_setting.critical_stockout_days if notification_setting else None,
        settings.default_critical_stockout_days,
    )
    velocity_threshold = pick(
        notification_setting.sales_velocity_threshold if notification_setting else None,
        shop.high_demand_threshold,
        settings.default_sales_velocity_threshold,
    )

    return ShopThresholds(
        low_stock_threshold_units=low,
        critical_stock_threshold_units=critical_units,
        critical_stockout_days=critical_days,
        sales_velocity_threshold=velocity_threshold,
    )


async def load_shop_thresholds(session: AsyncSession, shop: Shop) -> ShopThresholds:
    result = await session.execute(
        select(NotificationSetting).where(NotificationSetting.shop_id == shop.id)
    )
    return resolve_shop_thresholds(shop, result.scalar_one_or_none())


def calculate_product_metrics(
    variants: Sequence[VariantForStatus] | None,
    sales_velocity: float | None,
    thresholds: ShopThresholds,
) -> ProductMetrics:
    """
    Compute total inventory, stockout days and status for one product.

    Status is classified against the aggregated total rather than per variant.
    Stockout days are infinite when there is no sales velocity.

    Args:
        variants: The product's variants (inventory_quantity may be None)
        sales_velocity: Units sold per day, None when unknown
        thresholds: The shop's thresholds

    Returns:
        ProductMetrics
    """
    variants = list(variants or [])
    current_total_inventory = sum(v.inventory_quantity or 0 for v in variants)

    if not sales_velocity:
        stockout_days = math.inf
    else:
        stockout_days = current_total_inventory / sales_velocity

    if variants:
        status = calculate_product_status(
            [SimpleNamespace(inventory_quantity=current_total_inventory)],
            thresholds.low_stock_threshold_units,
            critical_threshold=thresholds.critical_stock_threshold_units,
        )
    else:
        status = ProductStatus.UNKNOWN

    return ProductMetrics(
        current_total_inventory=current_total_inventory,
        stockout_days=stockout_days,
        status=status,
    )


def is_trending(sales_velocity: float | None, thresholds: ShopThresholds) -> bool:
    return sales_velocity is not None and sales_velocity > thresholds.sales_velocity_threshold


async def recalculate_product(
    session: AsyncSession,
    product: Product,
    thresholds: ShopThresholds,
    variants: Iterable[Variant] | None = None,
) -> RecalculationResult:
    """
    Recompute and persist a product's metrics inside the caller's transaction.

    Compares the stored status with the new one: an escalation into Low or
    Critical adds an alert, a recovery to Healthy resolves active alerts, an
    unchanged status does neither.
    """
    if variants is None:
        await session.flush()
        result = await session.execute(select(Variant).where(Variant.product_id == product.id))
        variants = result.scalars().all()

    metrics = calculate_product_metrics(list(variants), product.sales_velocity, thresholds)
    trending = is_trending(product.sales_velocity, thresholds)
    transition = detect_status_transition(product.status, metrics.status)

    product.status = metrics.status
    product.stockout_days = (
        metrics.stockout_days if math.isfinite(metrics.stockout_days) else None
    )
    product.trending = trending

    recalculation = RecalculationResult(
        product_id=product.id, metrics=metrics, trending=trending, transition=transition
    )

    if transition is None:
        return recalculation

    logger.info(
        "Product status changed",
        product_id=product.id,
        previous=transition.previous.value,
        current=transition.current.value,
    )

    if transition.is_escalation:
        alert = build_stock_alert(
            product,
            transition,
            metrics.current_total_inventory,
            metrics.stockout_days,
            thresholds.critical_stockout_days,
        )
        session.add(alert)
        recalculation.alert = alert
        logger.info(
            "Stock alert created",
            product_id=product.id,
            alert_type=alert.type.value,
            severity=alert.severity.value,
        )
    elif transition.is_recovery:
        await resolve_stock_alerts(session, product.id)

    return recalculation


async def update_all_product_metrics_for_shop(
    session_factory: async_sessionmaker[AsyncSession], shop_id: str
) -> BulkRecalculationResult:
    """
    Recalculate metrics for every product of a shop in one transaction.

    Never raises for a missing shop or a database failure; both are reported
    in the returned result.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                shop = await session.get(Shop, shop_id)
                if shop is None:
                    logger.warning("Shop not found for metrics recalculation", shop_id=shop_id)
                    return BulkRecalculationResult(
                        success=False,
                        updated_count=0,
                        message=f"Shop with ID {shop_id} not found.",
                        shop_missing=True,
                    )

                thresholds = await load_shop_thresholds(session, shop)
                products = (
                    await session.execute(select(Product).where(Product.shop_id == shop_id))
                ).scalars().all()

                variants_by_product: dict[str, list[Variant]] = defaultdict(list)
                if products:
                    variant_rows = await session.execute(
                        select(Variant).where(Variant.product_id.in_([p.id for p in products]))
                    )
                    for variant in variant_rows.scalars():
                        variants_by_product[variant.product_id].append(variant)

                updated_count = 0
                for product in products:
                    await recalculate_product(
                        session, product, thresholds, variants_by_product.get(product.id, [])
                    )
                    updated_count += 1
                shop_domain = shop.shop

        logger.info(
            "Recalculated product metrics for shop",
            shop_id=shop_id,
            updated_count=updated_count,
        )
        return BulkRecalculationResult(
            success=True,
            updated_count=updated_count,
            message=f"Updated metrics for {updated_count} products in shop {shop_domain}.",
        )
    except SQLAlchemyError as e:
        logger.error("Failed to recalculate product metrics", shop_id=shop_id, error=str(e))
        return BulkRecalculationResult(success=False, updated_count=0, message=str(e))
