"""FastAPI application entry point."""

import logging
import os
import threading

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from genjobs.config import settings
from genjobs.routes import rpc

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="genjobs",
    description="Crash-resilient job orchestration for multi-step generation pipelines",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(rpc.router)

# Watchdog thread management
watchdog_thread = None
watchdog_stop_event = threading.Event()


def run_watchdog_loop():
    """Run the watchdog loop in a background thread."""
    from genjobs.engine import get_engine
    logger.info("Starting background watchdog thread")
    get_engine().watchdog.run_forever(watchdog_stop_event)


@app.on_event("startup")
async def startup_event():
    """Start the background watchdog when the app starts."""
    global watchdog_thread
    logger.info("Starting application...")

    from genjobs.database import SessionLocal
    import sqlalchemy

    try:
        db = SessionLocal()
        table_exists = sqlalchemy.inspect(db.get_bind()).has_table("jobs")
        db.close()

        if table_exists:
            logger.info("Database tables already exist, skipping migrations")
        else:
            # Run database migrations
            logger.info("Running database migrations...")
            from alembic import command
            from alembic.config import Config

            alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
            command.upgrade(alembic_cfg, "head")
            logger.info("Database migrations completed successfully")
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")

    if not settings.WATCHDOG_ENABLED:
        logger.info("Watchdog disabled, expecting external RunWatchdog calls")
        return

    watchdog_thread = threading.Thread(target=run_watchdog_loop, daemon=True)
    watchdog_thread.start()
    logger.info("Background watchdog thread started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the background watchdog when the app shuts down."""
    logger.info("Shutting down application...")

    # Signal watchdog to stop
    watchdog_stop_event.set()

    # Wait for watchdog thread to finish (with timeout)
    if watchdog_thread and watchdog_thread.is_alive():
        watchdog_thread.join(timeout=10)
        logger.info("Background watchdog thread stopped")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "genjobs",
        "version": "0.1.0",
        "status": "running",
    }
