"""
Shopify data transformation service.
Transforms Shopify webhook payloads into normalized records keyed by Shopify GIDs.
"""

import structlog

from app.integrations.base import (
    NormalizedInventory,
    NormalizedLocation,
    NormalizedOrder,
    NormalizedOrderLine,
    NormalizedProduct,
    NormalizedVariant,
)
from app.integrations.shopify.models import (
    InventoryLevelsUpdateWebhook,
    LocationWebhook,
    OrderWebhook,
    ProductCreateWebhook,
    ProductUpdateWebhook,
    ShopifyVariant,
)

logger = structlog.get_logger()

GID_PREFIX = "gid://shopify/"


def to_gid(resource: str, resource_id: int | str | None) -> str | None:
    """
    Build a Shopify global ID (e.g. ``gid://shopify/Product/123``).
    Values that already are GIDs are returned unchanged.
    """
    if resource_id is None or resource_id == "":
        return None
    value = str(resource_id)
    if value.startswith(GID_PREFIX):
        return value
    return f"{GID_PREFIX}{resource}/{value}"


def parse_price(value: str | None) -> float | None:
    """Parse a Shopify money string; None when absent or unparseable."""
    if value is None:
        return None
    try:
        return float(str(value).replace("$", "").replace(",", "").strip())
    except ValueError:
        logger.warning("Invalid price format, ignoring", price=value)
        return None


def split_tags(tags: str | None) -> list[str]:
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


class ShopifyTransformer:
    """Service for transforming Shopify webhook data to normalized format."""

    @staticmethod
    def normalize_product(
        product: ProductCreateWebhook | ProductUpdateWebhook,
    ) -> NormalizedProduct:
        """
        Normalize a Shopify product with all of its variants.

        Args:
            product: Shopify product webhook payload

        Returns:
            Normalized product
        """
        variants = None
        if product.variants is not None:
            variants = [ShopifyTransformer._normalize_variant(v) for v in product.variants]

        return NormalizedProduct(
            source_id=to_gid("Product", product.id),
            title=product.title,
            vendor=product.vendor or None,
            product_type=product.product_type or None,
            category=(product.category.full_name or product.category.name or None) if product.category else None,
            tags=split_tags(product.tags),
            variants=variants,
        )

    @staticmethod
    def _normalize_variant(variant: ShopifyVariant) -> NormalizedVariant:
        return NormalizedVariant(
            source_variant_id=to_gid("ProductVariant", variant.id),
            title=variant.title or "Default",
            sku=variant.sku or None,
            price=parse_price(variant.price),
            inventory_quantity=variant.inventory_quantity,
            inventory_item_id=to_gid("InventoryItem", variant.inventory_item_id),
        )

    @staticmethod
    def normalize_inventory(inventory: InventoryLevelsUpdateWebhook) -> NormalizedInventory:
        return NormalizedInventory(
            inventory_item_id=to_gid("InventoryItem", inventory.inventory_item_id),
            location_id=to_gid("Location", inventory.location_id),
            available=inventory.available,
            updated_at=inventory.updated_at,
        )

    @staticmethod
    def normalize_location(location: LocationWebhook) -> NormalizedLocation:
        address = ", ".join(part for part in (location.address1, location.city, location.country_code) if part)
        return NormalizedLocation(
            location_id=to_gid("Location", location.id),
            name=location.name,
            address=address,
        )

    @staticmethod
    def normalize_order(order: OrderWebhook) -> NormalizedOrder:
        """Normalize an order; price strings that fail to parse count as zero revenue."""
        lines = [
            NormalizedOrderLine(
                line_item_id=str(item.id),
                product_id=to_gid("Product", item.product_id),
                variant_id=to_gid("ProductVariant", item.variant_id),
                quantity=item.quantity,
                price=parse_price(item.price) or 0.0,
                title=item.title,
            )
            for item in order.line_items
        ]
        return NormalizedOrder(
            order_id=str(order.id),
            name=order.name,
            created_at=order.created_at,
            line_items=lines,
        )

    @staticmethod
    def extract_store_domain_from_webhook(headers: dict[str, str]) -> str | None:
        """
        Extract Shopify store domain from webhook headers.

        Args:
            headers: Request headers

        Returns:
            Store domain if found, None otherwise
        """
        shop_domain = headers.get("X-Shopify-Shop-Domain") or headers.get("x-shopify-shop-domain")

        if shop_domain:
            # Remove protocol if present
            shop_domain = shop_domain.replace("https://", "").replace("http://", "").strip()

        return shop_domain or None
