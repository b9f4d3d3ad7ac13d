"""
Open Bookkeeping Payroll - FastAPI Application Entry Point

This is the main entry point for the payroll run processing service.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import init_db, close_db
from app.utils.error_handling import setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Ledger: {settings.ledger_api_url} (timeout {settings.ledger_timeout_seconds}s)")

    # Initialize database (dev only - use migrations in production)
    if settings.is_development:
        await init_db()
        logger.info("Database tables initialized")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    await close_db()
    logger.info("Database connections closed")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI application. Tests pass use_lifespan=False and manage their own database."""
    application = FastAPI(
        title=settings.app_name,
        description="Payroll run processing: statutory deductions, review workflow and ledger posting",
        version="0.1.0",
        docs_url="/api/docs" if settings.is_development else None,
        redoc_url="/api/redoc" if settings.is_development else None,
        lifespan=lifespan if use_lifespan else None,
    )

    # Configure CORS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_exception_handlers(application)

    # ===========================================
    # API ROUTES
    # ===========================================

    @application.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @application.get("/api/v1")
    async def api_root():
        """API v1 root endpoint."""
        return {
            "message": f"Welcome to {settings.app_name} API v1",
            "endpoints": {
                "payroll_runs": "/api/v1/payroll/payroll-runs",
                "pay_slips": "/api/v1/payroll/pay-slips/{pay_slip_id}",
            },
        }

    # ===========================================
    # INCLUDE ROUTERS
    # ===========================================

    from app.routers import payroll

    application.include_router(payroll.router, prefix="/api/v1/payroll", tags=["Payroll"])

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
