"""
TourPay - payment confirmation pipeline.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.services.order_state import PAYMENT_FAILURE_POLICIES
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("tourpay")

SHUTDOWN_GRACE_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("TourPay starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.gateway_webhook_secret:
        if settings.app_env == "production" or not settings.allow_unsigned_webhooks:
            logger.warning("GATEWAY_WEBHOOK_SECRET not set - all gateway webhooks will be rejected.")
        else:
            logger.warning("GATEWAY_WEBHOOK_SECRET not set - accepting unsigned webhooks (development only).")
    if not settings.operator_jwt_secret:
        logger.warning("OPERATOR_JWT_SECRET not set - operator endpoints are disabled.")
    if settings.payment_failure_policy not in PAYMENT_FAILURE_POLICIES:
        logger.warning(
            "Unknown PAYMENT_FAILURE_POLICY=%s - failed payments will cancel orders.",
            settings.payment_failure_policy,
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    stop_event = asyncio.Event()
    worker_tasks: list[asyncio.Task] = []

    from src.workers.webhook_dispatcher import run_webhook_dispatcher
    worker_tasks.append(asyncio.create_task(run_webhook_dispatcher(stop_event)))
    logger.info("Webhook dispatcher started")

    from src.workers.order_reaper import run_order_reaper
    worker_tasks.append(asyncio.create_task(run_order_reaper(stop_event)))
    logger.info("Order reaper started")

    from src.workers.token_hygiene import run_token_hygiene
    worker_tasks.append(asyncio.create_task(run_token_hygiene(stop_event)))
    logger.info("Token hygiene worker started")

    app.state.stop_event = stop_event

    yield

    # Graceful shutdown - let the current tick finish, then cancel stragglers
    logger.info("TourPay shutting down - stopping %d workers...", len(worker_tasks))
    stop_event.set()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=SHUTDOWN_GRACE_SECONDS)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from src.database import dispose_engine
    await dispose_engine()
    logger.info("TourPay shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="TourPay",
        description="Payment confirmation pipeline: webhook intake, order state machine, reaper",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://localhost:5173",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
