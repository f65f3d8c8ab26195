"""FastAPI application entry point."""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import stripe
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from credit_engine.api.v1 import coupons, credits, health, invoices, purchases, subscriptions
from credit_engine.api.webhooks import stripe as stripe_webhooks
from credit_engine.config import settings
from credit_engine.exceptions import BillingError
from credit_engine.middleware.logging import LoggingMiddleware, setup_logging
from credit_engine.middleware.metrics import MetricsMiddleware
from credit_engine.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("application_starting", env=settings.app_env)
    yield
    logger.info("application_shutting_down")


app = FastAPI(
    title="Credit Ledger & Billing Settlement Engine",
    description="Prepaid credits, purchases, coupons, invoices and subscriptions for the voice-agent platform",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(
        "x-request-id", f"req_{uuid.uuid4().hex[:12]}"
    )


def _error_response(status_code: int, body: ErrorResponse, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body, exclude_none=True),
        headers=headers,
    )


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render engine errors with their own status code, code and remediation."""
    request_id = _request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "billing_error",
        path=request.url.path,
        request_id=request_id,
        code=exc.code,
        error_message=exc.message,
        context=exc.context,
    )

    return _error_response(
        exc.status_code,
        ErrorResponse(
            error=type(exc).__name__,
            message=exc.message,
            details=[ErrorDetail(code=exc.code, message=exc.message)],
            remediation=exc.remediation,
            request_id=request_id,
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level validation errors."""
    request_id = _request_id(request)

    details = [
        ErrorDetail(
            code="validation_error",
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
            value=error.get("input"),
        )
        for error in exc.errors()
    ]

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error_count=len(details),
    )

    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorResponse(
            error="ValidationError",
            message="Request validation failed",
            details=details,
            remediation="Check the API documentation for correct request format at /docs",
            request_id=request_id,
        ),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Return 503 Service Unavailable for database errors."""
    request_id = _request_id(request)

    logger.error(
        "database_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    # Don't expose internal database details in production
    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

    return _error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        ErrorResponse(
            error="DatabaseError",
            message="A database error occurred",
            details=[ErrorDetail(code=ErrorCode.DATABASE_ERROR, message=error_message)],
            remediation=REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
            request_id=request_id,
        ),
        headers={"Retry-After": "30"},
    )


@app.exception_handler(stripe.StripeError)
async def stripe_exception_handler(request: Request, exc: stripe.StripeError) -> JSONResponse:
    """Return 502 Bad Gateway for Stripe errors that escaped an adapter."""
    request_id = _request_id(request)
    stripe_code = getattr(exc, "code", None)

    logger.error(
        "stripe_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        stripe_code=stripe_code,
        stripe_message=str(exc),
    )

    user_message = {
        "card_declined": "Payment method declined. Please try a different payment method.",
        "expired_card": "Payment method has expired. Please use a different payment method.",
        "incorrect_cvc": "Card security code is incorrect. Please check and try again.",
        "processing_error": "Payment processing error. Please try again.",
        "rate_limit": "Too many payment attempts. Please try again later.",
    }.get(stripe_code, "Payment gateway error occurred")

    return _error_response(
        status.HTTP_502_BAD_GATEWAY,
        ErrorResponse(
            error="PaymentGatewayError",
            message=user_message,
            details=[
                ErrorDetail(
                    code=ErrorCode.STRIPE_API_ERROR,
                    message=str(exc) if settings.app_env != "production" else user_message,
                )
            ],
            remediation=REMEDIATION_HINTS.get(ErrorCode.STRIPE_API_ERROR),
            request_id=request_id,
        ),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return a safe 500 for anything else, logging the stack trace."""
    request_id = _request_id(request)

    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        request_id=request_id,
        exception_type=type(exc).__name__,
        exc_info=exc,
    )

    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(
            error="InternalServerError",
            message="An unexpected error occurred",
            details=[
                ErrorDetail(
                    code=ErrorCode.INTERNAL_ERROR,
                    message=str(exc) if settings.debug else "Internal server error",
                )
            ],
            remediation="Please contact support with the request ID",
            request_id=request_id,
        ),
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "service": "Credit Ledger & Billing Settlement Engine",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/v1", tags=["Credits"])
app.include_router(purchases.router, prefix="/v1", tags=["Purchases"])
app.include_router(purchases.proofs_router, prefix="/v1", tags=["Purchases"])
app.include_router(coupons.router, prefix="/v1", tags=["Coupons"])
app.include_router(subscriptions.router, prefix="/v1", tags=["Subscriptions"])
app.include_router(invoices.router, prefix="/v1", tags=["Invoices"])
app.include_router(stripe_webhooks.router, tags=["Webhooks"])
