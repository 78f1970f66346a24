from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import settings
from .db import dispose_engine, get_engine, get_session_local, init_models
from .deps import Services, build_services
from .logging_config import configure_logging
from .routers import chat, documents, phones, webhook

def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app. Tests pass prebuilt services; otherwise they come from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
        if services is not None:
            app.state.services = services
            yield
            return
        await init_models(get_engine())
        app.state.services = build_services(get_session_local())
        yield
        await dispose_engine()

    app = FastAPI(title="Docbot", version="0.2.0", lifespan=lifespan)
    app.add_middleware(CORSMiddleware,
        allow_origins=[o.strip() for o in settings.ALLOWED_ORIGINS.split(",")],
        allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
    if services is not None:
        # ASGI test transports don't run lifespan
        app.state.services = services

    @app.get("/health")
    async def health(): return {"status": "ok"}

    app.include_router(documents.router, prefix="/v1")
    app.include_router(phones.router,    prefix="/v1")
    app.include_router(webhook.router,   prefix="/v1")
    app.include_router(chat.router,      prefix="/v1")
    return app

app = create_app()
