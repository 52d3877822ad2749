"""
FastAPI router for per-shop inventory administration.
Bulk metric recalculation, product status listing, threshold settings, warehouses and alerts.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import get_session, get_session_factory
from app.integrations.base import NormalizedLocation
from app.integrations.shopify.transformer import to_gid
from app.models.database import NotificationSetting, Product, ProductAlert, Shop, Variant, Warehouse
from app.models.status import ProductStatus
from app.services.inventory_sync import shop_context_cache, upsert_warehouse_row
from app.services.product_metrics import resolve_shop_thresholds, update_all_product_metrics_for_shop

logger = structlog.get_logger()

router = APIRouter(prefix="/api/shops", tags=["shops"])


class RecalculationResponse(BaseModel):
    success: bool
    updated_count: int
    message: str


class ProductStatusResponse(BaseModel):
    """One product with its computed stock metrics."""

    id: str
    shopify_id: str
    title: str
    vendor: str
    category: str | None = None
    status: ProductStatus
    current_total_inventory: int
    sales_velocity: float | None = None
    stockout_days: float | None = None  # None means no projected stockout
    trending: bool


class UpdateSettingsRequest(BaseModel):
    """Threshold overrides; omitted fields are left unchanged."""

    low_stock_threshold: int | None = Field(None, ge=0)
    critical_stock_threshold_units: int | None = Field(None, ge=0)
    critical_stockout_days: int | None = Field(None, ge=0)
    sales_velocity_threshold: float | None = Field(None, ge=0)


class SettingsResponse(BaseModel):
    shop_id: str
    low_stock_threshold: int
    critical_stock_threshold_units: int | None = None
    critical_stockout_days: int
    sales_velocity_threshold: float


class UpsertWarehouseRequest(BaseModel):
    """A Shopify location to map to a warehouse. Numeric location ids are accepted."""

    shopify_location_gid: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    location: str = ""


class WarehouseResponse(BaseModel):
    id: str
    name: str
    location: str
    shopify_location_gid: str | None = None


class AlertResponse(BaseModel):
    id: str
    product_id: str
    type: str
    severity: str
    previous_status: ProductStatus
    status: ProductStatus
    message: str
    is_active: bool
    created_at: datetime | None = None


async def _get_shop_or_404(session: AsyncSession, shop_id: str) -> Shop:
    shop = await session.get(Shop, shop_id)
    if shop is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Shop with ID {shop_id} not found.",
        )
    return shop


@router.post("/{shop_id}/recalculate", response_model=RecalculationResponse)
async def recalculate_shop(
    shop_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Recalculate stock status, stockout days and trending for every product of a shop.
    Status transitions raise or resolve alerts exactly as webhooks do.
    """
    result = await update_all_product_metrics_for_shop(session_factory, shop_id)
    if result.success:
        return result.to_dict()

    if result.shop_missing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.message)


@router.get("/{shop_id}/products", response_model=list[ProductStatusResponse])
async def list_products(
    shop_id: str,
    product_status: ProductStatus | None = Query(None, alias="status", description="Filter by stock status"),
    session: AsyncSession = Depends(get_session),
):
    await _get_shop_or_404(session, shop_id)

    query = select(Product).where(Product.shop_id == shop_id).order_by(Product.title)
    if product_status is not None:
        query = query.where(Product.status == product_status)
    products = (await session.execute(query)).scalars().all()

    totals: dict[str, int] = {}
    if products:
        rows = await session.execute(
            select(Variant.product_id, func.coalesce(func.sum(Variant.inventory_quantity), 0))
            .where(Variant.product_id.in_([p.id for p in products]))
            .group_by(Variant.product_id)
        )
        totals = {product_id: int(total) for product_id, total in rows.all()}

    return [
        ProductStatusResponse(
            id=p.id,
            shopify_id=p.shopify_id,
            title=p.title,
            vendor=p.vendor,
            category=p.category,
            status=p.status,
            current_total_inventory=totals.get(p.id, 0),
            sales_velocity=p.sales_velocity,
            stockout_days=p.stockout_days,
            trending=p.trending,
        )
        for p in products
    ]


@router.put("/{shop_id}/settings", response_model=SettingsResponse)
async def update_settings(
    shop_id: str,
    request: UpdateSettingsRequest,
    session: AsyncSession = Depends(get_session),
):
    """
    Update the shop's threshold overrides.
    The next webhook for the shop picks up the new values immediately.
    """
    async with session.begin():
        shop = await _get_shop_or_404(session, shop_id)
        notification_setting = (
            await session.execute(select(NotificationSetting).where(NotificationSetting.shop_id == shop_id))
        ).scalar_one_or_none()
        if notification_setting is None:
            notification_setting = NotificationSetting(shop_id=shop_id)
            session.add(notification_setting)

        for field_name, value in request.model_dump(exclude_unset=True).items():
            setattr(notification_setting, field_name, value)

        thresholds = resolve_shop_thresholds(shop, notification_setting)
        shop_domain = shop.shop

    shop_context_cache.invalidate(shop_domain)
    logger.info("Shop settings updated", shop_id=shop_id, shop=shop_domain)

    return SettingsResponse(
        shop_id=shop_id,
        low_stock_threshold=thresholds.low_stock_threshold_units,
        critical_stock_threshold_units=thresholds.critical_stock_threshold_units,
        critical_stockout_days=thresholds.critical_stockout_days,
        sales_velocity_threshold=thresholds.sales_velocity_threshold,
    )


@router.get("/{shop_id}/warehouses", response_model=list[WarehouseResponse])
async def list_warehouses(shop_id: str, session: AsyncSession = Depends(get_session)):
    await _get_shop_or_404(session, shop_id)

    warehouses = (
        await session.execute(select(Warehouse).where(Warehouse.shop_id == shop_id).order_by(Warehouse.name))
    ).scalars().all()
    return [
        WarehouseResponse(
            id=w.id,
            name=w.name,
            location=w.location,
            shopify_location_gid=w.shopify_location_gid,
        )
        for w in warehouses
    ]


@router.post("/{shop_id}/warehouses", response_model=WarehouseResponse)
async def upsert_warehouse(
    shop_id: str,
    request: UpsertWarehouseRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    """
    Create or update the warehouse for a Shopify location.
    Inventory level webhooks for the location apply from then on.
    """
    location = NormalizedLocation(
        location_id=to_gid("Location", request.shopify_location_gid.strip()),
        name=request.name.strip(),
        address=request.location.strip(),
    )
    async with session.begin():
        await _get_shop_or_404(session, shop_id)
        warehouse, created = await upsert_warehouse_row(session, shop_id, location)
        result = WarehouseResponse(
            id=warehouse.id,
            name=warehouse.name,
            location=warehouse.location,
            shopify_location_gid=warehouse.shopify_location_gid,
        )

    if created:
        response.status_code = status.HTTP_201_CREATED
    logger.info("Warehouse saved", shop_id=shop_id, warehouse_id=result.id, created=created)
    return result


@router.get("/{shop_id}/alerts", response_model=list[AlertResponse])
async def list_alerts(
    shop_id: str,
    active: bool | None = Query(None, description="Only active (true) or resolved (false) alerts"),
    session: AsyncSession = Depends(get_session),
):
    await _get_shop_or_404(session, shop_id)

    query = (
        select(ProductAlert)
        .join(Product, Product.id == ProductAlert.product_id)
        .where(Product.shop_id == shop_id)
        .order_by(ProductAlert.created_at.desc())
    )
    if active is not None:
        query = query.where(ProductAlert.is_active.is_(active))
    alerts = (await session.execute(query)).scalars().all()

    return [
        AlertResponse(
            id=a.id,
            product_id=a.product_id,
            type=a.type.value,
            severity=a.severity.value,
            previous_status=a.previous_status,
            status=a.status,
            message=a.message,
            is_active=a.is_active,
            created_at=a.created_at,
        )
        for a in alerts
    ]
