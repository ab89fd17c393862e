import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings
from app.routers import auth, health
from app.services.container import build_services
from app.services.notifications import Notifier
from app.services.otp import utcnow

LOGGER = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = build_services(settings, notifier=notifier, clock=clock)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        services.start()
        LOGGER.info("%s backend started", settings.app_name)
        try:
            yield
        finally:
            services.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api")
    app.include_router(auth.router, prefix="/api")
    app.include_router(auth.router)  # Compatibility for clients calling /auth/* without /api.

    @app.get("/")
    def root():
        return {"status": "Backend running"}

    return app
