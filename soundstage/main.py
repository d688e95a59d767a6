import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from soundstage.core.config import cors_origins, settings, validate_config
from soundstage.core.database import create_all_tables
from soundstage.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from soundstage.core.logging import configure_logging
from soundstage.core.middleware.request_id import RequestIdMiddleware
from soundstage.api import billing, credits, generation, health, plans

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("soundstage")
    logger.info("Starting SoundStage backend...")
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping SoundStage backend...")


app = FastAPI(title="SoundStage - Credits & Entitlements", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(credits.router)
app.include_router(plans.router)
app.include_router(billing.router)
app.include_router(generation.router)
