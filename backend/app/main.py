"""FastAPI entrypoint for the MacroLog backend."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import entries, health, webhooks
from .config import load_settings
from .infra.logging import configure_logging


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and register routers."""

    settings = load_settings()
    configure_logging(settings.logging)
    application = FastAPI(title="MacroLog API", version="0.1.0")
    allowed_origins = {
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:19006",
        "http://127.0.0.1:19006",
    }
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(allowed_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    for router in (health.router, entries.router, webhooks.router):
        application.include_router(router)
    return application


app = create_app()
