import logging.config

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.events import router as events_router
from app.api.metrics import router as metrics_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.monitoring.metrics import RegistryRelayMetrics
from app.store import SqlIdentityDirectory, SqlPersistence
from parley.realtime import Relay


LOGGING_CONFIG = {
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
        "parley.realtime": {
            "level": "INFO",
            "propagate": True,
        }
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

settings = get_settings()

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_relay() -> Relay:
    """Assemble a relay backed by the SQL collaborators."""

    metrics = RegistryRelayMetrics()
    app.state.relay_metrics = metrics
    return Relay(
        settings.relay_config(),
        persistence=SqlPersistence(),
        directory=SqlIdentityDirectory(),
        metrics=metrics,
    )


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok", "environment": settings.environment}


@app.on_event("startup")
async def _startup() -> None:
    relay = getattr(app.state, "relay", None)
    if relay is None:
        relay = build_relay()
        app.state.relay = relay
    await relay.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    relay = getattr(app.state, "relay", None)
    if relay is not None:
        await relay.stop()
        app.state.relay = None


app.include_router(events_router)
app.include_router(ws_router)
app.include_router(metrics_router)
