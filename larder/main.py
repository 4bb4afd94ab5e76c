import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from larder/.env
larder_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(larder_dir, ".env"))

from larder.core.config import settings, validate_config  # noqa: E402
from larder.core.database import create_all_tables  # noqa: E402
from larder.core.logging import configure_logging  # noqa: E402
from larder.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from larder.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from larder.api import health, households, notifications, subscription  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("larder")
    logger.info("Starting larder API...", extra={"backend_mode": settings.BACKEND_MODE})
    if settings.BACKEND_MODE == "local":
        create_all_tables()
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("larder").info("Stopping larder API...")


app = FastAPI(title="Larder - Household API", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(households.router)
app.include_router(subscription.router)
app.include_router(notifications.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("larder.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
