import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from wishbubble.core.config import settings, validate_config
from wishbubble.core.logging import configure_logging
from wishbubble.core.middleware.request_id import RequestIdMiddleware
from wishbubble.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from wishbubble.api import billing, bubbles, health, tier, webhooks

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("wishbubble")
    logger.info("Starting WishBubble backend...")
    try:
        yield
    finally:
        logging.getLogger("wishbubble").info("Stopping WishBubble backend...")


app = FastAPI(title="WishBubble - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tier.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(bubbles.router)
app.include_router(health.router)
