"""CORS for the staff and parent portals that call the points API."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dojo.config import Settings
from dojo.middleware.request_id import REQUEST_ID_HEADER

# The API only serves these verbs.
PORTAL_METHODS = ["GET", "POST", "PUT", "OPTIONS"]

PORTAL_REQUEST_HEADERS = ["Content-Type", REQUEST_ID_HEADER, "X-Sweep-Secret"]

# Read by the portals to back off when rate limited.
PORTAL_EXPOSED_HEADERS = [REQUEST_ID_HEADER, "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=PORTAL_METHODS,
        allow_headers=PORTAL_REQUEST_HEADERS,
        expose_headers=PORTAL_EXPOSED_HEADERS,
    )
