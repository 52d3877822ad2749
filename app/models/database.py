"""
SQLAlchemy ORM models for the local mirror of a merchant's Shopify store.

Products, variants and per-location inventory are written only by webhook
synchronization; status and stockout days are derived columns maintained by
the metrics recalculation.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.status import AlertSeverity, AlertType, ProductStatus


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, name: str):
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
    )


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Shop(TimestampMixin, Base):
    """A Shopify store that installed the app."""

    __tablename__ = "shops"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shop: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    low_stock_threshold: Mapped[int | None] = mapped_column(Integer, default=10)
    critical_stock_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    high_demand_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)


class NotificationSetting(TimestampMixin, Base):
    """Per-shop alert thresholds. Values left null fall back to the shop, then to defaults."""

    __tablename__ = "notification_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shop_id: Mapped[str] = mapped_column(
        ForeignKey("shops.id", ondelete="CASCADE"), unique=True, index=True
    )
    low_stock_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    critical_stock_threshold_units: Mapped[int | None] = mapped_column(Integer, nullable=True)
    critical_stockout_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sales_velocity_threshold: Mapped[float | None] = mapped_column(Float, nullable=True)


class Product(TimestampMixin, Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shop_id: Mapped[str] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    shopify_id: Mapped[str] = mapped_column(String(255), unique=True)
    title: Mapped[str] = mapped_column(String(512))
    vendor: Mapped[str] = mapped_column(String(255), default="Unknown")
    product_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Standard product taxonomy path, e.g. "Apparel & Accessories > Shoes"
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    # Units sold per day; null means no sales data yet
    sales_velocity: Mapped[float | None] = mapped_column(Float, nullable=True)
    trending: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[ProductStatus] = mapped_column(
        _enum_column(ProductStatus, "product_status"), default=ProductStatus.UNKNOWN, index=True
    )
    # Null means no projected stockout (zero or unknown velocity)
    stockout_days: Mapped[float | None] = mapped_column(Float, nullable=True)


class Variant(TimestampMixin, Base):
    __tablename__ = "variants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    product_id: Mapped[str] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), index=True
    )
    shopify_id: Mapped[str] = mapped_column(String(255), unique=True)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    sku: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    # Cross-location total; derived from Inventory rows once any exist
    inventory_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inventory_item_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)


class Warehouse(TimestampMixin, Base):
    """A Shopify location."""

    __tablename__ = "warehouses"
    __table_args__ = (UniqueConstraint("shop_id", "name", name="uq_warehouse_shop_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shop_id: Mapped[str] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    location: Mapped[str] = mapped_column(String(512), default="")
    shopify_location_gid: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )


class Inventory(TimestampMixin, Base):
    """Quantity of one variant at one warehouse. Authoritative over Variant.inventory_quantity."""

    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("variant_id", "warehouse_id", name="uq_inventory_variant_warehouse"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    variant_id: Mapped[str] = mapped_column(
        ForeignKey("variants.id", ondelete="CASCADE"), index=True
    )
    product_id: Mapped[str] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), index=True
    )
    warehouse_id: Mapped[str] = mapped_column(
        ForeignKey("warehouses.id", ondelete="CASCADE"), index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, default=0)


class ProductAlert(TimestampMixin, Base):
    __tablename__ = "product_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    product_id: Mapped[str] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), index=True
    )
    type: Mapped[AlertType] = mapped_column(_enum_column(AlertType, "alert_type"))
    severity: Mapped[AlertSeverity] = mapped_column(_enum_column(AlertSeverity, "alert_severity"))
    previous_status: Mapped[ProductStatus] = mapped_column(
        _enum_column(ProductStatus, "product_status")
    )
    status: Mapped[ProductStatus] = mapped_column(_enum_column(ProductStatus, "product_status"))
    message: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class SalesRecord(Base):
    """One order line as seen by an order webhook."""

    __tablename__ = "sales_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    product_id: Mapped[str] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), index=True
    )
    topic: Mapped[str] = mapped_column(String(64))
    order_id: Mapped[str] = mapped_column(String(64))
    line_item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    units_sold: Mapped[int] = mapped_column(Integer, default=0)
    revenue: Mapped[float] = mapped_column(Float, default=0.0)
    sales_velocity: Mapped[float] = mapped_column(Float, default=0.0)
    stock_level: Mapped[int] = mapped_column(Integer, default=0)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ProcessedEvent(Base):
    """Marks a non-idempotent event (an order) as applied, so redeliveries are no-ops."""

    __tablename__ = "processed_events"
    __table_args__ = (
        UniqueConstraint("shop_id", "topic", "external_id", name="uq_processed_event"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    shop_id: Mapped[str] = mapped_column(ForeignKey("shops.id", ondelete="CASCADE"), index=True)
    topic: Mapped[str] = mapped_column(String(64))
    external_id: Mapped[str] = mapped_column(String(64))
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
