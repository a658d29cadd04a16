import logging.config
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import Settings, get_settings
from app.services import runtime


def build_logging_config(level: str) -> dict[str, Any]:
    """Root logs at INFO; the presence core follows ``LOG_LEVEL``."""

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
            }
        },
        "root": {
            "handlers": ["default"],
            "level": "INFO",
        },
        "loggers": {
            "huddle": {"level": level},
            "app": {"level": level},
            # The reader loop logs every reconnect; keep it on its own handler.
            "huddle.presence.redis_store": {
                "handlers": ["default"],
                "level": level,
                "propagate": False,
            },
        },
    }


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    await runtime.startup_presence()
    try:
        yield
    finally:
        await runtime.shutdown_presence()


def create_app(settings: Settings) -> FastAPI:
    logging.config.dictConfig(build_logging_config(settings.log_level))

    application = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.get("/health", tags=["system"])
    def health_check() -> dict[str, Any]:
        """Liveness plus the presence store's view of connectivity."""

        payload: dict[str, Any] = {
            "status": "ok",
            "environment": settings.environment,
            "store_backend": settings.presence_store_backend,
        }
        try:
            store = runtime.get_store()
        except RuntimeError:
            payload.update(status="starting", store_connected=False, room_state=None)
            return payload
        payload["store_connected"] = store.connected
        payload["room_state"] = runtime.get_room_client().session.state.value
        return payload

    application.include_router(api_router, prefix="/api")
    application.include_router(ws_router)
    application.include_router(metrics_router)
    return application


app = create_app(get_settings())
