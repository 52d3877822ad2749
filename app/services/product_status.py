"""
Stock status classification of a product from its variants' inventory levels.
"""
from collections.abc import Iterable
from typing import Protocol

from app.models.status import ProductStatus


class VariantForStatus(Protocol):
    """Anything carrying an inventory quantity; None means not set."""

    inventory_quantity: int | None


def calculate_product_status(
    variants: Iterable[VariantForStatus] | None,
    low_stock_threshold: float,
    critical_threshold: float | None = None,
) -> ProductStatus:
    """
    Classify a product by its worst variant.

    A variant at or below the critical level (half the effective low-stock
    threshold unless ``critical_threshold`` is given) makes the product
    Critical; otherwise one at or below the low-stock threshold makes it Low;
    otherwise it is Healthy. Products without variants are Unknown.

    Args:
        variants: The product's variants, or None
        low_stock_threshold: Units at or below which stock is low. Values
            below 1 are treated as 1.
        critical_threshold: Units at or below which stock is critical

    Returns:
        The product's ProductStatus
    """
    if not variants:
        return ProductStatus.UNKNOWN

    effective_threshold = max(1, low_stock_threshold)
    critical_level = effective_threshold / 2 if critical_threshold is None else critical_threshold

    status = ProductStatus.UNKNOWN
    for variant in variants:
        quantity = variant.inventory_quantity or 0

        if quantity <= critical_level:
            return ProductStatus.CRITICAL
        if quantity <= effective_threshold:
            status = ProductStatus.LOW
        elif status is ProductStatus.UNKNOWN:
            status = ProductStatus.HEALTHY

    return status
