"""
Integration registry for discovery and management of integrations.
"""

import structlog

from app.integrations.base import BaseIntegrationAdapter

logger = structlog.get_logger()


class IntegrationRegistry:
    """Registry that manages and provides access to all integrations."""

    def __init__(self, load_defaults: bool = True):
        self._integrations: dict[str, BaseIntegrationAdapter] = {}
        if load_defaults:
            self._load_integrations()

    def _load_integrations(self):
        """Load all available integrations."""
        from app.integrations.shopify.adapter import ShopifyIntegrationAdapter

        self.register(ShopifyIntegrationAdapter())

    def register(self, adapter: BaseIntegrationAdapter):
        """
        Register an integration adapter.

        Args:
            adapter: Integration adapter instance
        """
        name = adapter.get_name()
        if name in self._integrations:
            logger.warning("Integration already registered, replacing", integration_name=name)
        self._integrations[name] = adapter
        logger.info("Registered integration", integration_name=name)

    def get_adapter(self, integration_name: str) -> BaseIntegrationAdapter | None:
        """
        Get adapter for specific integration.

        Args:
            integration_name: Name of the integration (e.g., 'shopify')

        Returns:
            Integration adapter instance, or None if not found
        """
        return self._integrations.get(integration_name.lower())

    def list_available(self) -> list[str]:
        return list(self._integrations.keys())


# Global registry instance
integration_registry = IntegrationRegistry()
