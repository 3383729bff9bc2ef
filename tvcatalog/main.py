from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tvcatalog.config import settings, setup_logging
from tvcatalog.services.scheduler_service import prefetch_scheduler

from tvcatalog.routers import SERVICE_NAME, SERVICE_VERSION, main_router


setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(f"Starting {SERVICE_NAME}...")

    try:
        prefetch_scheduler.start()
        logger.info(f"{SERVICE_NAME} started successfully")
    except Exception as e:
        logger.error(f"Failed to start {SERVICE_NAME}: {e}", exc_info=True)
        raise

    yield

    logger.info(f"Shutting down {SERVICE_NAME}...")

    try:
        prefetch_scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}", exc_info=True)

    logger.info(f"{SERVICE_NAME} stopped")


app = FastAPI(
    title=SERVICE_NAME,
    version=SERVICE_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)

app.include_router(main_router)

