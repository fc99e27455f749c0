"""IncidentDesk — incident reporting and response backend.

FastAPI entry point with lifespan management.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api.router import api_router, websocket_router
from .api.websockets.live import manager as ws_manager
from .database import close_engine, create_tables
from .dependencies import get_app_config, get_category_catalog, get_live_gateway, reset_singletons
from .middleware.error_handler import register_error_handlers
from .middleware.request_id import RequestIDMiddleware
from .utils.logging import get_logger, setup_logging

config = get_app_config()
setup_logging(
    debug=config.debug,
    log_dir=config.log_dir,
    log_max_bytes=config.log_max_bytes,
    log_backup_count=config.log_backup_count,
)
logger = get_logger("incidentdesk.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    cfg = get_app_config()
    logger.info("incidentdesk_starting", host=cfg.host, port=cfg.port)

    if cfg.secret_key == "CHANGE_ME_IN_PRODUCTION":
        if not cfg.debug:
            raise RuntimeError(
                "INSECURE_SECRET_KEY — default secret_key detected in production mode. "
                "Set SECRET_KEY to the identity provider's signing key in .env."
            )
        logger.warning("insecure_secret_key", detail="default secret_key in debug mode")

    await create_tables(cfg)

    if cfg.seed_default_categories:
        try:
            await get_category_catalog().seed_defaults()
        except Exception as e:
            logger.error("seed_categories_failed", error=str(e))

    logger.info("incidentdesk_started")
    yield

    # --- Shutdown ---
    logger.info("incidentdesk_stopping")
    try:
        await ws_manager.close_all()
    except Exception as e:
        logger.debug("ws_close_all_failed", error=str(e))
    await get_live_gateway().close()
    await close_engine()
    reset_singletons()
    logger.info("incidentdesk_stopped")


app = FastAPI(
    title="IncidentDesk",
    description="Incident reporting, triage and response",
    version="1.0.0",
    lifespan=lifespan,
)

# Register standard error handlers
register_error_handlers(app)

# Request ID — correlation IDs on every request
app.add_middleware(RequestIDMiddleware)

app.include_router(api_router)
app.include_router(websocket_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "app": get_app_config().app_name,
        "live": get_live_gateway().get_stats(),
        "websocket_connections": ws_manager.connection_count,
    }


def main():
    """Run the IncidentDesk server."""
    uvicorn.run(
        "incidentdesk.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )


if __name__ == "__main__":
    main()
