"""
Citizen Ledger - FastAPI Application
"""
from fastapi import FastAPI

from citizen_ledger.api.routes import router as api_router
from citizen_ledger.core.config import settings
from citizen_ledger.core.logging import get_logger, setup_logging
from citizen_ledger.core.middleware import setup_exception_handlers, setup_middleware
from citizen_ledger.db.database import Base, engine
import citizen_ledger.db.models  # noqa: F401  (register tables on Base.metadata)

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Reward/penalty ledger, debts, gem restrictions and payment gateway reconciliation.",
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.get("/health")
async def health_check() -> dict:
    return {"status": "healthy", "service": settings.APP_NAME}
