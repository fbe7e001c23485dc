import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError

# Load env from the working directory's .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from provisioner.core.config import settings, validate_config
from provisioner.core.logging import configure_logging
from provisioner.core.middleware.request_id import RequestIdMiddleware
from provisioner.core.middleware.metrics import MetricsMiddleware
from provisioner.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from provisioner.core.tracing import setup_tracing
from provisioner.api import health, metrics, servers

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))
setup_tracing(enabled=settings.OTEL_ENABLED)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("provisioner")
    logger.info("Starting provisioner...")
    try:
        yield
    finally:
        logger.info("Stopping provisioner...")


app = FastAPI(title="Provisioner", lifespan=lifespan)

# Middlewares
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(servers.router)
