"""
Pydantic models for Shopify webhook payloads.
Handles products/create, products/update, products/delete, inventory_levels/update,
locations/create, locations/update, orders/create, orders/paid and app/uninstalled events.

Only the fields the sync reads are declared; everything else Shopify sends is ignored.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class ShopifyVariant(BaseModel):
    """Shopify product variant model."""

    id: int
    product_id: int | None = None
    title: str | None = None
    price: str | None = None
    sku: str | None = None
    position: int | None = None
    barcode: str | None = None
    inventory_quantity: int | None = None
    inventory_item_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ShopifyProductCategory(BaseModel):
    """Standard product taxonomy category."""

    admin_graphql_api_id: str | None = None
    name: str | None = None
    full_name: str | None = None


class ProductCreateWebhook(BaseModel):
    """Webhook payload for products/create event."""

    id: int
    title: str
    body_html: str | None = None
    vendor: str | None = None
    product_type: str | None = None
    category: ShopifyProductCategory | None = None
    handle: str | None = None
    status: str | None = None
    tags: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # None when the payload carried no variant list at all
    variants: list[ShopifyVariant] | None = None


class ProductUpdateWebhook(ProductCreateWebhook):
    """Webhook payload for products/update event (same structure as create)."""

    pass


class ProductDeleteWebhook(BaseModel):
    """Webhook payload for products/delete event."""

    id: int
    title: str | None = None


class InventoryLevelsUpdateWebhook(BaseModel):
    """Webhook payload for inventory_levels/update event."""

    inventory_item_id: int
    location_id: int
    available: int | None = None
    updated_at: datetime | None = None
    admin_graphql_api_id: str | None = None


class LocationWebhook(BaseModel):
    """Webhook payload for locations/create and locations/update events."""

    id: int
    name: str
    address1: str | None = None
    city: str | None = None
    country_code: str | None = None
    active: bool | None = None
    admin_graphql_api_id: str | None = None


class OrderLineItem(BaseModel):
    """A single line of an order."""

    id: int
    product_id: int | None = None
    variant_id: int | None = None
    title: str = ""
    quantity: int = 0
    price: str = "0.00"
    sku: str | None = None


class OrderWebhook(BaseModel):
    """Webhook payload for orders/create and orders/paid events."""

    id: int
    name: str | None = None
    email: str | None = None
    total_price: str | None = None
    subtotal_price: str | None = None
    financial_status: str | None = None
    fulfillment_status: str | None = None
    created_at: datetime | None = None
    line_items: list[OrderLineItem] = Field(default_factory=list)


class AppUninstalledWebhook(BaseModel):
    """Webhook payload for app/uninstalled event (the shop resource)."""

    id: int | None = None
    domain: str | None = None
    myshopify_domain: str | None = None
