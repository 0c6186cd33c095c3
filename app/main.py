"""
Library Loan Service - Main Application
FastAPI entry point for borrow/return with distributed locking and request replay
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from app.config import settings
from app.database import init_db
from app.middleware.correlation_id import CorrelationIdMiddleware, get_correlation_id
from app.routers.loans import router as loans_router
from app.services.cache import get_cache
from app.services.monitoring import setup_logging

# Structured Logging Setup
setup_logging(logging.DEBUG if settings.environment == "development" else logging.INFO)
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Library Loan Service",
    description="Borrow and return book copies with exactly-once inventory updates",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(CorrelationIdMiddleware)

# Register routers
app.include_router(loans_router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Infrastructure failures: the transaction was rolled back and locks released."""
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "correlation_id": get_correlation_id()
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    logger.info("startup", environment=settings.environment)

    # Initialize database connection
    init_db()
    logger.info("database_initialized")

    get_cache()


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Library Loan Service API",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    Reports which backends are configured
    """
    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "cache": "redis" if settings.redis_url else "memory"
        }
    }

    if settings.database_url:
        health_status["services"]["database"] = "configured"
    else:
        health_status["services"]["database"] = "not_configured"

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
