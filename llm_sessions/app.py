"""Main FastAPI application for the LLM session manager daemon.

The daemon owns every model subprocess; the CLI and editor integrations are
HTTP clients on 127.0.0.1. Sessions live as long as the daemon does.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api.routers import sessions, settings

# Configure logging
logging.basicConfig(
    level=os.getenv("LLMS_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


async def periodic_session_status():
    """
    Background task that periodically logs session status.

    Sessions end on their own when their process exits; this task only
    reports what is running for debugging.
    """
    logger = logging.getLogger(__name__)
    logger.info("Periodic session status task started (checks every 30 seconds)")

    from .session import get_registry

    while True:
        try:
            await asyncio.sleep(30)
            active = sorted(get_registry().list_active())
            logger.debug(f"Active sessions: {active}")
        except asyncio.CancelledError:
            logger.info("Periodic session status task cancelled")
            break
        except Exception as e:
            logger.error(f"Unexpected error in periodic session status: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events (startup and shutdown)."""
    logger = logging.getLogger(__name__)

    status_task: asyncio.Task | None = None

    try:
        # Startup
        logger.info("Starting up session manager...")

        from .db.settings import init_settings_table
        init_settings_table()

        # Load the catalog and build the global registry
        from .session import get_registry
        registry = get_registry()
        logger.info(
            f"Session registry initialized: {len(registry.catalog)} models, "
            f"threads={registry.threads}, idle_timeout={registry.idle_timeout_ms}ms"
        )

        status_task = asyncio.create_task(periodic_session_status())

        logger.info("Startup complete")

        yield  # Application runs here

    finally:
        # Shutdown
        logger.info("Shutting down session manager...")

        if status_task is not None:
            status_task.cancel()
            try:
                await status_task
            except asyncio.CancelledError:
                pass

        try:
            from .session import get_registry, reset_registry
            logger.info("Stopping all sessions...")
            await get_registry().shutdown_all()
            reset_registry()
            logger.info("All sessions stopped")
        except Exception as e:
            logger.warning(f"Error stopping sessions: {e}")

        logger.info("Shutdown complete")


# Create FastAPI app with lifespan handler
app = FastAPI(
    title="LLM Session Manager API",
    description="Supervises interactive local inference processes and routes queries to them",
    version=__version__,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.include_router(sessions.router)
app.include_router(settings.router)


@app.get("/api/health")
async def health():
    """Health check endpoint with session status."""
    from .session import get_registry

    try:
        active = sorted(get_registry().list_active())
    except Exception:
        active = []

    return {
        "status": "healthy",
        "version": __version__,
        "sessions": active,
    }

