"""
Base integration adapter interface.
An integration turns a commerce platform's webhooks into normalized records
and hands them to the inventory sync service.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any


class NormalizedVariant:
    """Normalized variant data structure used across all integrations."""

    def __init__(
        self,
        source_variant_id: str,
        title: str = "Default",
        sku: str | None = None,
        price: float | None = None,
        inventory_quantity: int | None = None,
        inventory_item_id: str | None = None,
    ):
        self.source_variant_id = source_variant_id
        self.title = title
        self.sku = sku
        self.price = price
        self.inventory_quantity = inventory_quantity
        self.inventory_item_id = inventory_item_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_variant_id": self.source_variant_id,
            "title": self.title,
            "sku": self.sku,
            "price": self.price,
            "inventory_quantity": self.inventory_quantity,
            "inventory_item_id": self.inventory_item_id,
        }


class NormalizedProduct:
    """Normalized product data structure used across all integrations."""

    def __init__(
        self,
        source_id: str,
        title: str = "",
        vendor: str | None = None,
        product_type: str | None = None,
        category: str | None = None,
        tags: list[str] | None = None,
        variants: list[NormalizedVariant] | None = None,
        **kwargs,
    ):
        self.source_id = source_id
        self.title = title
        self.vendor = vendor
        self.product_type = product_type
        self.category = category
        self.tags = tags or []
        # None means the payload did not describe variants; [] means it has none
        self.variants = variants
        self.extra_data = kwargs

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary format for logging and responses."""
        data = {
            "source_id": self.source_id,
            "title": self.title,
            "vendor": self.vendor,
            "product_type": self.product_type,
            "category": self.category,
            "tags": self.tags,
            "variants": [v.to_dict() for v in self.variants] if self.variants is not None else None,
        }
        data.update(self.extra_data)
        return data


class NormalizedInventory:
    """Normalized inventory level (one inventory item at one location)."""

    def __init__(
        self,
        inventory_item_id: str,
        location_id: str,
        available: int | None = None,
        updated_at: datetime | None = None,
        **kwargs,
    ):
        self.inventory_item_id = inventory_item_id
        self.location_id = location_id
        self.available = available
        self.updated_at = updated_at
        self.extra_data = kwargs

    def to_dict(self) -> dict[str, Any]:
        data = {
            "inventory_item_id": self.inventory_item_id,
            "location_id": self.location_id,
            "available": self.available,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        data.update(self.extra_data)
        return data


class NormalizedLocation:
    """A stock location (Shopify location, local warehouse)."""

    def __init__(self, location_id: str, name: str, address: str = ""):
        self.location_id = location_id
        self.name = name
        self.address = address


class NormalizedOrderLine:
    def __init__(
        self,
        line_item_id: str,
        product_id: str | None,
        variant_id: str | None,
        quantity: int,
        price: float = 0.0,
        title: str = "",
    ):
        self.line_item_id = line_item_id
        self.product_id = product_id
        self.variant_id = variant_id
        self.quantity = quantity
        self.price = price
        self.title = title


class NormalizedOrder:
    """Normalized order with the lines relevant to sales tracking."""

    def __init__(
        self,
        order_id: str,
        name: str | None = None,
        created_at: datetime | None = None,
        line_items: list[NormalizedOrderLine] | None = None,
    ):
        self.order_id = order_id
        self.name = name or order_id
        self.created_at = created_at
        self.line_items = line_items or []


class BaseIntegrationAdapter(ABC):
    """Base class that all integrations must implement."""

    @abstractmethod
    def get_name(self) -> str:
        """
        Return integration name.

        Returns:
            Integration name (e.g., 'shopify')
        """
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str | None, headers: dict[str, str]) -> bool:
        """
        Verify webhook signature for authenticity.

        Args:
            payload: Raw webhook payload bytes
            signature: Signature string from headers
            headers: Request headers dictionary

        Returns:
            True if signature is valid, False otherwise
        """
        pass

    @abstractmethod
    def extract_signature(self, headers: dict[str, str]) -> str | None:
        """Return the webhook signature carried in the request headers."""
        pass

    @abstractmethod
    def extract_store_id(self, headers: dict[str, str], payload: dict[str, Any]) -> str | None:
        """
        Extract store identifier from webhook.

        Args:
            headers: Request headers
            payload: Parsed webhook payload

        Returns:
            Store identifier string, or None if not found
        """
        pass

    @abstractmethod
    def transform_product(self, raw_data: dict[str, Any]) -> NormalizedProduct:
        """Transform integration-specific product data to normalized format."""
        pass

    @abstractmethod
    def transform_inventory(self, raw_data: dict[str, Any]) -> NormalizedInventory:
        """Transform integration-specific inventory data to normalized format."""
        pass

    @abstractmethod
    def transform_order(self, raw_data: dict[str, Any]) -> NormalizedOrder:
        """Transform integration-specific order data to normalized format."""
        pass

    @abstractmethod
    def get_supported_events(self) -> list[str]:
        """
        Return list of supported webhook event types.

        Returns:
            List of event type strings (e.g., ['products/create', 'products/update'])
        """
        pass

    @abstractmethod
    async def handle_webhook(
        self,
        event_type: str,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Handle a webhook event.

        Args:
            event_type: Type of event (e.g., 'products/create')
            headers: Request headers
            payload: Parsed webhook payload

        Returns:
            Response dictionary
        """
        pass
