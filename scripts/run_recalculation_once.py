"""
Single-pass metrics reconciliation for scheduled jobs (cron, GitHub Actions).
Recalculates every shop once, then exits; the exit code is 1 when any shop failed.

Reuses MetricsWorker.run_once() so the scheduled pass and the long-running
worker share one code path.
"""

import asyncio
import sys

import structlog

from app.database import close_db
from app.utils.logger import configure_logging
from app.workers.metrics_worker import MetricsWorker

configure_logging()
logger = structlog.get_logger()


async def main() -> int:
    worker = MetricsWorker()
    try:
        logger.info("Scheduled metrics reconciliation: starting")
        results = await worker.run_once()
    except Exception as e:
        logger.error("Metrics reconciliation failed", error=str(e))
        return 1
    finally:
        await close_db()

    failed = [shop_id for shop_id, result in results.items() if not result.success]
    logger.info(
        "Scheduled metrics reconciliation: done",
        shops=len(results),
        failed_shops=failed,
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
