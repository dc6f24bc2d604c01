import os
from fastapi import FastAPI
from dotenv import load_dotenv
from core.db import Base, engine
from core.celery import celery_app
from core.logging import configure_logging
import models  # noqa: F401
from routes.payments import router as payments_router

load_dotenv()
configure_logging()

app = FastAPI(
    title=os.getenv("APP_NAME", "Qwiksale Payments"),
    version=os.getenv("APP_VERSION", "1.0.0"),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Ensure tables exist (for dev/test; in prod use migrations)
Base.metadata.create_all(bind=engine)

app.include_router(payments_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": os.getenv("APP_NAME", "Qwiksale Payments"),
    }


@app.get("/celery-health")
async def celery_health_check():
    """Check Celery worker status"""
    try:
        inspect = celery_app.control.inspect()
        stats = inspect.stats()
        if stats:
            return {"status": "healthy", "workers": len(stats)}
        else:
            return {"status": "no_workers", "message": "No Celery workers running"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    debug = os.getenv("DEBUG", "False").lower() == "true"

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=debug,
    )
