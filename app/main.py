"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, and includes webhook and admin routes.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.database import check_db_health, close_db, init_db
from app.integrations.registry import integration_registry
from app.routers import shops, webhooks
from app.utils.logger import configure_logging

# Configure logging first
configure_logging()
logger = structlog.get_logger()

app = FastAPI(
    title="Shopify Inventory Monitor",
    description="Mirrors Shopify inventory from webhooks and tracks stock status, stockout horizon and alerts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(shops.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    init_db()
    logger.info(
        "Shopify Inventory Monitor started",
        integrations=integration_registry.list_available(),
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    await close_db()
    logger.info("Shopify Inventory Monitor shutting down")


@app.get("/health")
async def health():
    """Health check endpoint, including database connectivity."""
    database = await check_db_health()
    return {
        "status": database["status"],
        "database": database["database"],
        "integrations": integration_registry.list_available(),
    }


@app.get("/healthz")
async def healthz():
    """Liveness check endpoint (Kubernetes-style)."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
