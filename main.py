import os
from fastapi import FastAPI
from dotenv import load_dotenv

from core.config import settings
from core.db import init_db
from core.celery import celery_app
from core.exceptions import register_exception_handlers
from core.logging import LoggerContextMiddleware, configure_logging, get_logger
from core.middleware import ErrorHandlerMiddleware
from routes.admin import router as admin_router
from routes.orders import router as orders_router
from routes.payments import router as payments_router

load_dotenv()
configure_logging()

logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
from fastapi.openapi.utils import get_openapi

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"BearerAuth": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

app.add_middleware(ErrorHandlerMiddleware)
app.add_middleware(LoggerContextMiddleware)
register_exception_handlers(app)

# Ensure tables exist (for dev/test; in prod use migrations)
init_db()

app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(admin_router)

logger.info("app_started", app=settings.APP_NAME, environment=settings.ENVIRONMENT)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
    }


@app.get("/celery-health")
async def celery_health_check():
    """Worker status plus the reconcile sweep schedule"""
    schedule = celery_app.conf.beat_schedule.get("reconcile-stale-payments", {})
    reconcile = {"task": schedule.get("task"), "every_seconds": schedule.get("schedule")}
    try:
        stats = celery_app.control.inspect(timeout=1.0).stats()
    except Exception as e:
        logger.warning("celery_inspect_failed", error=str(e))
        return {"status": "unhealthy", "error": str(e), "reconcile": reconcile}
    if not stats:
        return {"status": "no_workers", "message": "No Celery workers running", "reconcile": reconcile}
    return {"status": "healthy", "workers": len(stats), "reconcile": reconcile}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
