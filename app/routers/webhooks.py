"""
Generic webhook router that delegates to integration adapters.

Examples:
    POST /webhooks/shopify/products/create
    POST /webhooks/shopify/inventory_levels/update
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.integrations.registry import IntegrationRegistry, integration_registry

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_integration_registry() -> IntegrationRegistry:
    return integration_registry


@router.post("/{integration_name}/{event_type:path}")
async def handle_webhook(
    integration_name: str,
    event_type: str,
    request: Request,
    registry: IntegrationRegistry = Depends(get_integration_registry),
):
    """
    Generic webhook handler that routes to the appropriate integration adapter.

    Local data gaps (unknown shop, variant, location) are answered with 200 and
    a ``skipped`` status so the platform does not keep retrying them.
    """
    adapter = registry.get_adapter(integration_name)
    if not adapter:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Integration '{integration_name}' not found. Available integrations: {registry.list_available()}",
        )

    supported_events = adapter.get_supported_events()
    if event_type not in supported_events:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Event type '{event_type}' not supported by {integration_name}. Supported events: {supported_events}",
        )

    # Raw body is needed for signature verification
    body_bytes = await request.body()
    headers = dict(request.headers)

    signature = adapter.extract_signature(headers)
    if not adapter.verify_signature(body_bytes, signature, headers):
        logger.warning(
            "Invalid webhook signature",
            integration=integration_name,
            event_type=event_type,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(body_bytes.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid JSON payload: {str(e)}",
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload: expected an object",
        )

    shop = adapter.extract_store_id(headers, payload)
    with structlog.contextvars.bound_contextvars(
        integration=integration_name, topic=event_type, shop=shop
    ):
        logger.info("Processing webhook")
        try:
            result = await adapter.handle_webhook(event_type=event_type, headers=headers, payload=payload)
        except HTTPException:
            raise
        except Exception as e:
            logger.exception("Failed to process webhook", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to process webhook: {str(e)}",
            )

        logger.info("Webhook processed", result_status=result.get("status"))
        return result
