"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from fastapi import Header

from dojo.config import get_settings
from dojo.database import get_session as _get_session
from dojo.errors import ForbiddenError
from dojo.redis_client import get_optional_redis

get_db = _get_session


async def get_redis_dep() -> AsyncGenerator[object | None, None]:
    """Yield the Redis client (or None when Redis is not configured)."""
    yield get_optional_redis()


async def require_sweep_secret(x_sweep_secret: str = Header(default="")) -> None:
    """Guard scheduled-job endpoints with a shared secret header."""
    expected = get_settings().sweep_secret
    if expected and x_sweep_secret != expected:
        raise ForbiddenError("Invalid sweep secret")
