import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env before settings are read
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quiver.core.config import settings, validate_config
from quiver.core.logging import configure_logging
from quiver.core.middleware.request_id import RequestIdMiddleware
from quiver.core.database import create_all_tables, get_database_url
from quiver.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from quiver.api import autoplot, billing, health, legacy

configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quiver")
    logger.info("Starting Quiver backend...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("quiver").info("Stopping Quiver backend...")


app = FastAPI(title="Quiver - Entitlements", lifespan=lifespan)

# Vision collaborators for /api/autoplot; wired by the deployment
app.state.arrow_detector = None
app.state.appearance_learner = None

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(billing.router)
app.include_router(autoplot.router)
app.include_router(legacy.router)
