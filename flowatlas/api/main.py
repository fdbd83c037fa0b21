"""
Migration Flow Atlas - FastAPI Application
Read-only API over the partitioned flow cache
"""

import os

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from flowatlas.api.routes import reset_engine, router
from flowatlas.utils.artifact_keys import INDEX_KEY, SUMMARY_KEY
from flowatlas.utils.logging import setup_logging

settings = get_settings()
logger = setup_logging("api")


def _parse_cors_allow_origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in (raw or "").split(",") if origin.strip()]
    return origins or ["http://localhost:5173", "http://127.0.0.1:5173"]


app = FastAPI(
    title=settings.API_TITLE,
    version=settings.API_VERSION,
    description=settings.API_DESCRIPTION,
    docs_url="/docs" if settings.DEBUG else None,  # Disable in production
    redoc_url="/redoc" if settings.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_allow_origins(settings.CORS_ALLOW_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event():
    """Run on application startup"""
    logger.info(f"Starting {settings.API_TITLE} v{settings.API_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Cache: {settings.ARTIFACT_BASE_URL or settings.CACHE_DIR}")


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown"""
    reset_engine()
    logger.info("Shutting down API")


@app.get("/")
async def root():
    """
    Root endpoint - API information
    """
    return {
        "name": settings.API_TITLE,
        "version": settings.API_VERSION,
        "description": settings.API_DESCRIPTION,
        "docs": "/docs" if settings.DEBUG else "disabled in production",
        "endpoints": {
            "health": "/health",
            "flows": "/api/v1/flows",
            "summary": "/api/v1/summary",
            "geo": "/api/v1/geo",
            "dimensions": "/api/v1/dimensions",
            "feature_schema": "/api/v1/features/schema",
            "feature_rank": "/api/v1/features/rank",
            "feature_by_county": "/api/v1/features/{feature_id}/counties",
            "area_totals": "/api/v1/areas/{geoid}/totals",
            "area_series": "/api/v1/areas/{geoid}/series",
            "attribution": "/api/v1/attribution/{state_code}",
        },
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring
    """
    try:
        cache_ready = all(
            os.path.exists(os.path.join(settings.CACHE_DIR, key)) for key in (INDEX_KEY, SUMMARY_KEY)
        )

        return {
            "status": "healthy" if (cache_ready or settings.ARTIFACT_BASE_URL) else "degraded",
            "local_cache": "available" if cache_ready else "missing",
            "remote_cache": settings.ARTIFACT_BASE_URL or "not configured",
            "environment": settings.ENVIRONMENT,
        }

    except OSError as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "flowatlas.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
