"""
Background worker that periodically reconciles product metrics.
Recomputes status, stockout days and trending for every shop, catching any
drift left by missed or out-of-order webhooks.
"""
import asyncio

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.database import close_db, get_session_factory
from app.models.database import Shop
from app.services.product_metrics import BulkRecalculationResult, update_all_product_metrics_for_shop

logger = structlog.get_logger()


class MetricsWorker:
    """Worker that recalculates product metrics for all shops on an interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        interval_seconds: int | None = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.interval_seconds = interval_seconds or settings.metrics_worker_interval_seconds
        self.running = False

    async def start(self):
        """Start the reconciliation loop."""
        self.running = True
        logger.info("Metrics worker started", interval_seconds=self.interval_seconds)

        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Error in metrics worker loop", error=str(e))

            await asyncio.sleep(self.interval_seconds)

    async def stop(self):
        self.running = False
        logger.info("Metrics worker stopped")

    async def list_shop_ids(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(Shop.id).order_by(Shop.shop))
            return list(result.scalars())

    async def run_once(self) -> dict[str, BulkRecalculationResult]:
        """
        Recalculate every shop once, each in its own transaction.

        Returns:
            Result per shop ID
        """
        results: dict[str, BulkRecalculationResult] = {}
        for shop_id in await self.list_shop_ids():
            result = await update_all_product_metrics_for_shop(self.session_factory, shop_id)
            results[shop_id] = result
            if result.success:
                logger.info("Shop metrics reconciled", shop_id=shop_id, updated_count=result.updated_count)
            else:
                logger.error("Shop metrics reconciliation failed", shop_id=shop_id, message=result.message)

        logger.info(
            "Metrics reconciliation pass finished",
            shops=len(results),
            failed=sum(1 for r in results.values() if not r.success),
        )
        return results


async def run_worker():
    """Run the metrics worker."""
    worker = MetricsWorker()
    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        await worker.stop()
        await close_db()
