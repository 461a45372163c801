# backend/solvit/main.py
"""
Solvit backend application.

Booking lifecycle, session access and payment reconciliation API. Scheduled
work runs in Celery (see ``solvit.tasks``); this module only serves HTTP.
"""

import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.constants import BRAND_NAME
from .core.exceptions import DomainException
from .routes import metrics
from .routes.v1 import bookings as bookings_v1, payments as payments_v1, sessions as sessions_v1

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{BRAND_NAME} API",
    description="Counseling session booking, attendance and payment reconciliation",
    version="1.0.0",
    docs_url="/docs" if settings.environment != "production" else None,
)


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    """Fallback for domain errors raised outside the route-level handlers."""
    http_exc = exc.to_http_exception()
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(bookings_v1.router, prefix="/bookings")
api_v1.include_router(sessions_v1.router, prefix="/sessions")
api_v1.include_router(payments_v1.router, prefix="/payments")

app.include_router(api_v1)
app.include_router(metrics.router)

logger.info("%s API initialised (environment=%s)", BRAND_NAME, settings.environment)

fastapi_app = app

__all__ = ["app", "fastapi_app"]
