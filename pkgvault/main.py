import asyncio
import logging

from fastapi import FastAPI

from pkgvault.api.catalog import router as catalog_router
from pkgvault.api.errors import register_error_handlers
from pkgvault.api.sessions import router as sessions_router
from pkgvault.api.titles import router as titles_router
from pkgvault.core.dependencies import get_catalog, get_engine, get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="pkgvault",
    version="0.1.0",
    description="Local game library manager: package installs, updates, DLC, and community patches and cheats.",
)
register_error_handlers(app)

_background_tasks = set()


@app.on_event("startup")
async def startup_event() -> None:
    """
    Load settings, open the install ledger and catalog, and optionally
    start a background refresh of the patch repositories.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    get_engine()
    catalog = get_catalog()
    logger.info(f"Library manager ready ({len(settings.repositories)} catalog repositories)")

    if settings.refresh_catalog_on_startup:
        task = asyncio.create_task(catalog.refresh_all())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


@app.get("/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


app.include_router(titles_router, prefix="/titles", tags=["titles"])
app.include_router(catalog_router, prefix="/catalog", tags=["catalog"])
app.include_router(sessions_router, prefix="/sessions", tags=["sessions"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pkgvault.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
