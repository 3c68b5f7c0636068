import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load .env before settings are read; tests configure the environment themselves
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from facilitator.api import health, market, paywall, users  # noqa: E402
from facilitator.core.config import settings, validate_config  # noqa: E402
from facilitator.core.database import create_all_tables  # noqa: E402
from facilitator.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from facilitator.core.logging import configure_logging  # noqa: E402
from facilitator.core.middleware.request_id import RequestIdMiddleware  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("facilitator")
    logger.info("Starting x402 facilitator...")
    create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping x402 facilitator...")


app = FastAPI(title="x402 facilitator", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.root_router)
app.include_router(health.router)
app.include_router(paywall.router)
app.include_router(market.router)
app.include_router(users.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("facilitator.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "4021")))
