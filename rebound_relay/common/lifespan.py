from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging
from .orm import dispose_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up Rebound & Relay billing API...")

    yield

    logger.info("Shutting down Rebound & Relay billing API...")

    try:
        dispose_engine()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")
