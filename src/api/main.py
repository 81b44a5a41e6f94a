import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from api import routers
from core.config import get_settings
from core.dependencies import Services, build_services
from core.errors import AppError
from core.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(get_settings())
        await app.state.services.start()
        try:
            yield
        finally:
            await app.state.services.aclose()

    app = FastAPI(title="Donation Ledger", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify the admin dashboard origin
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "Stripe-Signature"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    app.include_router(routers.router)
    return app


configure_logging()

app = create_app()

handler = Mangum(app)
