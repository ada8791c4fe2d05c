"""FastAPI application entry point with lifespan management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.api.router import api_router
from chatrelay.auth.middleware import SessionAuthMiddleware
from chatrelay.config import settings
from chatrelay.dependencies import (
    close_http_client,
    get_authenticator,
    get_http_client,
    reload_authenticator,
)
from chatrelay.errors import ApiError, api_error_handler, validation_error_handler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    logger.info("Starting %s (%s)...", settings.app_name, settings.environment)

    get_http_client()
    auth = get_authenticator()
    if not auth.is_configured:
        logger.error("Session authentication misconfigured: %s", auth.configuration_error())

    yield

    await close_http_client()
    logger.info("Chat relay shut down cleanly")


# Credentials and the session secret are loaded once, here, at startup.
reload_authenticator(settings)

app = FastAPI(
    title=settings.app_name,
    description="Authenticated streaming relay to upstream text-generation providers",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

# Added first so it runs inside CORS
app.add_middleware(SessionAuthMiddleware, authenticator_provider=get_authenticator)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.frontend_url,
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API routes
app.include_router(api_router, prefix="/api")

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
