"""
Shopify integration adapter.
Implements BaseIntegrationAdapter for Shopify webhooks, delegating every
event to the inventory sync service.
"""

import base64
import hashlib
import hmac
from typing import Any

import structlog
from fastapi import HTTPException, status
from pydantic import ValidationError

from app.config import settings
from app.integrations.base import (
    BaseIntegrationAdapter,
    NormalizedInventory,
    NormalizedLocation,
    NormalizedOrder,
    NormalizedProduct,
)
from app.integrations.shopify.models import (
    AppUninstalledWebhook,
    InventoryLevelsUpdateWebhook,
    LocationWebhook,
    OrderWebhook,
    ProductCreateWebhook,
    ProductDeleteWebhook,
)
from app.integrations.shopify.transformer import ShopifyTransformer, to_gid
from app.services.inventory_sync import InventorySyncService

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"


def compute_shopify_hmac(payload: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 digest of the raw body, as Shopify sends it."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


class ShopifyIntegrationAdapter(BaseIntegrationAdapter):
    """Shopify integration adapter implementing BaseIntegrationAdapter."""

    def __init__(self, sync_service: InventorySyncService | None = None, webhook_secret: str | None = None):
        self.transformer = ShopifyTransformer()
        self.sync_service = sync_service or InventorySyncService()
        self.webhook_secret = settings.shopify_webhook_secret if webhook_secret is None else webhook_secret

    def get_name(self) -> str:
        """Return integration name."""
        return "shopify"

    def verify_signature(self, payload: bytes, signature: str | None, headers: dict[str, str]) -> bool:
        """
        Verify Shopify webhook signature using HMAC SHA256.

        Args:
            payload: Raw request body bytes
            signature: X-Shopify-Hmac-Sha256 header value
            headers: Request headers (not used for Shopify, but kept for interface consistency)

        Returns:
            True if signature is valid, False otherwise
        """
        if not self.webhook_secret:
            logger.warning("SHOPIFY_WEBHOOK_SECRET not set, skipping signature verification")
            return True

        if not signature:
            return False

        calculated_hmac = compute_shopify_hmac(payload, self.webhook_secret)
        # Compare using secure comparison to prevent timing attacks
        return hmac.compare_digest(calculated_hmac, signature)

    def extract_signature(self, headers: dict[str, str]) -> str | None:
        return headers.get(SIGNATURE_HEADER) or headers.get(SIGNATURE_HEADER.lower())

    def extract_store_id(self, headers: dict[str, str], payload: dict[str, Any]) -> str | None:
        """
        Extract Shopify store domain from webhook headers.

        Args:
            headers: Request headers
            payload: Webhook payload (not used for Shopify)

        Returns:
            Store domain if found, None otherwise
        """
        return self.transformer.extract_store_domain_from_webhook(headers)

    def transform_product(self, raw_data: dict[str, Any]) -> NormalizedProduct:
        # products/create and products/update share the same structure
        return self.transformer.normalize_product(ProductCreateWebhook(**raw_data))

    def transform_inventory(self, raw_data: dict[str, Any]) -> NormalizedInventory:
        return self.transformer.normalize_inventory(InventoryLevelsUpdateWebhook(**raw_data))

    def transform_location(self, raw_data: dict[str, Any]) -> NormalizedLocation:
        return self.transformer.normalize_location(LocationWebhook(**raw_data))

    def transform_order(self, raw_data: dict[str, Any]) -> NormalizedOrder:
        return self.transformer.normalize_order(OrderWebhook(**raw_data))

    def get_supported_events(self) -> list[str]:
        """Return list of supported Shopify webhook event types."""
        return [
            "products/create",
            "products/update",
            "products/delete",
            "inventory_levels/update",
            "locations/create",
            "locations/update",
            "orders/create",
            "orders/paid",
            "app/uninstalled",
        ]

    async def handle_webhook(
        self,
        event_type: str,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Handle a Shopify webhook event.

        Args:
            event_type: Type of event (e.g., 'products/create')
            headers: Request headers
            payload: Parsed webhook payload

        Returns:
            Response dictionary
        """
        store_domain = self.extract_store_id(headers, payload)
        if not store_domain:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Shopify store domain not found",
            )

        try:
            if event_type in ("products/create", "products/update"):
                outcome = await self.sync_service.sync_product(store_domain, self.transform_product(payload))
            elif event_type == "products/delete":
                deleted = ProductDeleteWebhook(**payload)
                outcome = await self.sync_service.delete_product(store_domain, to_gid("Product", deleted.id))
            elif event_type == "inventory_levels/update":
                outcome = await self.sync_service.apply_inventory_level(
                    store_domain, self.transform_inventory(payload)
                )
            elif event_type in ("locations/create", "locations/update"):
                outcome = await self.sync_service.upsert_warehouse(store_domain, self.transform_location(payload))
            elif event_type == "orders/create":
                outcome = await self.sync_service.record_order(store_domain, self.transform_order(payload))
            elif event_type == "orders/paid":
                outcome = await self.sync_service.record_paid_order(store_domain, self.transform_order(payload))
            elif event_type == "app/uninstalled":
                uninstalled = AppUninstalledWebhook(**payload)
                shop = uninstalled.myshopify_domain or store_domain
                outcome = await self.sync_service.remove_shop(shop)
            else:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Unsupported event type: {event_type}",
                )
        except ValidationError as e:
            logger.warning("Invalid Shopify payload", event_type=event_type, error_count=e.error_count())
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "Invalid payload",
                    "errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
                },
            )

        return outcome.to_dict()
