"""
Status transition detection and stock alert creation.

Alerts are raised only when a product's status changes for the worse into Low
or Critical. Recomputing an unchanged status never creates an alert.
"""
import math
from dataclasses import dataclass

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Product, ProductAlert, utcnow
from app.models.status import AlertSeverity, AlertType, ProductStatus

logger = structlog.get_logger()


@dataclass(frozen=True)
class StatusTransition:
    previous: ProductStatus
    current: ProductStatus

    @property
    def is_escalation(self) -> bool:
        """Status moved to a worse stock level (Low or Critical)."""
        return (
            self.current in (ProductStatus.LOW, ProductStatus.CRITICAL)
            and self.current.severity > self.previous.severity
        )

    @property
    def is_recovery(self) -> bool:
        """Status moved back to Healthy from Low or Critical."""
        return self.current is ProductStatus.HEALTHY and self.previous in (
            ProductStatus.LOW,
            ProductStatus.CRITICAL,
        )


def detect_status_transition(
    previous: ProductStatus | str | None, current: ProductStatus | str | None
) -> StatusTransition | None:
    """
    Compare a stored status against a freshly computed one.

    Returns:
        StatusTransition, or None when nothing changed
    """
    previous_status = ProductStatus.from_legacy(previous)
    current_status = ProductStatus.from_legacy(current)
    if previous_status is current_status:
        return None
    return StatusTransition(previous=previous_status, current=current_status)


def build_stock_alert(
    product: Product,
    transition: StatusTransition,
    current_total_inventory: int,
    stockout_days: float,
    critical_stockout_days: int,
) -> ProductAlert:
    """
    Build (but do not add) the alert for an escalating transition.

    Low stock that will run out within the critical stockout horizon is
    reported with Critical severity.
    """
    if transition.current is ProductStatus.CRITICAL:
        alert_type = AlertType.CRITICAL_STOCK
        severity = AlertSeverity.CRITICAL
    else:
        alert_type = AlertType.LOW_STOCK
        severity = (
            AlertSeverity.CRITICAL
            if stockout_days <= critical_stockout_days
            else AlertSeverity.WARNING
        )

    message = (
        f"{product.title} is {transition.current.value.lower()} on stock "
        f"({current_total_inventory} units left"
    )
    if math.isfinite(stockout_days):
        message += f", about {stockout_days:.1f} days until stockout)"
    else:
        message += ")"

    return ProductAlert(
        product_id=product.id,
        type=alert_type,
        severity=severity,
        previous_status=transition.previous,
        status=transition.current,
        message=message,
        is_active=True,
    )


async def resolve_stock_alerts(session: AsyncSession, product_id: str) -> int:
    """Deactivate a product's active stock alerts. Returns how many were resolved."""
    result = await session.execute(
        update(ProductAlert)
        .where(ProductAlert.product_id == product_id, ProductAlert.is_active.is_(True))
        .values(is_active=False, updated_at=utcnow())
    )
    if result.rowcount:
        logger.info("Resolved stock alerts", product_id=product_id, count=result.rowcount)
    return result.rowcount or 0
