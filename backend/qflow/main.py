from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from .api.routes import api_router
from .engine import create_engine
import asyncio
import logging
import os

logger = logging.getLogger(__name__)


async def _reap_idle_sandboxes(app: FastAPI, interval: float):
    """Periodically destroy sandboxes idle past the configured threshold."""
    while True:
        await asyncio.sleep(interval)
        try:
            destroyed = await app.state.engine.sandbox_manager.destroy_idle()
        except Exception as e:
            logger.error(f"Idle sandbox reaper failed: {e}", exc_info=True)
            continue
        if destroyed:
            logger.info(f"Reaped {len(destroyed)} idle sandboxes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    # Startup
    logging.basicConfig(
        level=os.getenv("QFLOW_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting qflow engine...")
    engine = create_engine()
    app.state.engine = engine
    reaper = asyncio.create_task(
        _reap_idle_sandboxes(app, engine.config.reap_interval_seconds)
    )
    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down qflow engine...")
    reaper.cancel()
    try:
        await reaper
    except asyncio.CancelledError:
        pass
    await engine.shutdown()
    app.state.engine = None
    logger.info("Application shutdown complete")

app = FastAPI(
    title="qflow",
    description="qflow runs user-defined Python nodes as typed workflow graphs: each node executes in an isolated, resource-limited sandbox and values flow between nodes through a typed codec.",
    lifespan=lifespan
)

# Add CORS middleware
# Allow any localhost origin plus those listed in QFLOW_CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("QFLOW_CORS_ORIGINS", "").split(",") if o.strip()],
    allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
