from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, load_settings
from .gateway import StripeConfig, StripeGateway
from .identity import FirebaseVerifier
from .services.exceptions import ServiceError
from .storage import Store

logger = logging.getLogger(__name__)


def _redis_client(url: str | None):
    if not url:
        return None
    return redis.from_url(url)


def create_app(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    gateway=None,
    verifier=None,
) -> FastAPI:
    """Build the API with its collaborators.

    Components not passed in are constructed from ``settings``; the store is
    opened when the app starts and closed on shutdown.
    """
    settings = settings or load_settings()
    store = store or Store(settings.database_url, max_connections=settings.db_max_connections)
    gateway = gateway or StripeGateway(
        StripeConfig(secret_key=settings.stripe_secret, timeout=settings.gateway_timeout)
    )
    verifier = verifier or FirebaseVerifier(
        settings.firebase_project_id,
        cache=_redis_client(settings.redis_url),
        cache_ttl=settings.cache_ttl,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.open()
        logger.info("ClubSphere API starting up")
        yield
        store.close()
        close_verifier = getattr(verifier, "close", None)
        if callable(close_verifier):
            close_verifier()
        logger.info("ClubSphere API shut down")

    app = FastAPI(title="ClubSphere API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.verifier = verifier

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    def validation_exception_handler(request, exc):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(ServiceError)
    def service_error_handler(request, exc: ServiceError):
        content = {"detail": exc.message}
        if exc.retryable:
            content["retryable"] = True
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Server error"})

    from .routes.users import router as users_router
    from .routes.clubs import router as clubs_router
    from .routes.events import router as events_router
    from .routes.payments import router as payments_router

    app.include_router(users_router)
    app.include_router(clubs_router)
    app.include_router(events_router)
    app.include_router(payments_router)

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "Server running"

    return app
