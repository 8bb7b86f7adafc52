"""HTTP middleware stack for the points API."""

from fastapi import FastAPI

from dojo.config import Settings
from dojo.middleware.cors import setup_cors
from dojo.middleware.error_handler import setup_error_handlers
from dojo.middleware.logging import setup_logging
from dojo.middleware.rate_limit import RateLimitMiddleware
from dojo.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Install logging, error handlers and the middleware stack.

    Starlette wraps in reverse registration order, so the stack is added
    innermost first. The rate limiter runs inside RequestIdMiddleware, so a
    429 still carries X-Request-Id, and CORS sits outside both so the portals
    can read that 429.
    """
    setup_logging(settings)
    setup_error_handlers(app)

    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
