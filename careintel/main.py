import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from careintel import __version__
from careintel.config import settings
from careintel.core.error_handling import ErrorHandlingMiddleware, register_exception_handlers
from careintel.database import Base, engine, SessionLocal
from careintel import models  # noqa: F401  registers tables on Base.metadata
from careintel.routers import observations, intelligence, escalations

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Creates tables and, when enabled, starts the intelligence cron in a background thread.
    """
    logger.info("Starting Care Intelligence Backend...")

    logger.info("Creating database tables...")
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created")
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")

    job = None
    if settings.INTELLIGENCE_WORKER_ENABLED:
        logger.info("Starting Intelligence Worker...")
        from careintel.services.intelligence.background_worker import start_worker_in_thread
        job, _ = start_worker_in_thread(SessionLocal)
    else:
        logger.info("Intelligence Worker disabled (set INTELLIGENCE_WORKER_ENABLED=true to enable)")

    logger.info("Care Intelligence Backend startup complete")

    yield

    logger.info("Shutting down Care Intelligence Backend...")
    if job is not None:
        await job.stop()
        logger.info("Intelligence Worker stopped")
    logger.info("Shutdown complete")


app = FastAPI(
    title="Care Intelligence",
    description="Risk intelligence for residents and caregivers in care agencies",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

app.include_router(observations.router)
app.include_router(intelligence.router)
app.include_router(escalations.router)


@app.get("/")
async def root():
    return {
        "message": "Care Intelligence API",
        "version": __version__,
        "status": "operational"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "careintel.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
