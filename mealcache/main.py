import inspect
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from mealcache.config import get_settings
from mealcache.core.dependencies import build_services
from mealcache.routes import api

# App configuration
APP_NAME = "Meal Cache"
VERSION = "1.0.0"

logger = logging.getLogger(__name__)


async def _close(resource) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services once, run cache maintenance for the process lifetime."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for problem in settings.validate():
        logger.warning("Configuration problem: %s", problem)

    services = build_services(settings)
    app.state.services = services
    if settings.maintenance_enabled:
        services.scheduler.start()

    yield

    await services.scheduler.stop()
    await services.cache_service.shutdown()
    await _close(services.response_cache)
    await _close(services.store)


# Create FastAPI app
app = FastAPI(title=APP_NAME, version=VERSION, lifespan=lifespan)

# Include routers
app.include_router(api.router)

# Prometheus scrape endpoint
app.mount("/metrics", make_asgi_app())


# Basic health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}
