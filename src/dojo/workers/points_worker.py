"""arq jobs for the points engine.

Scheduled effects live here, outside the request path: the nightly badge
sweep, and repair of cached totals left stale after a recompute exhausted
its inline retries.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from dojo.config import get_settings
from dojo.database import close_db, get_session, init_db
from dojo.gamification.badge_service import sweep
from dojo.gamification.ledger_service import recompute_student_points

logger = logging.getLogger(__name__)


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


async def points_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    logger.info("Points worker started")


async def points_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Points worker shut down")


async def recompute_student(ctx: dict, student_id: int) -> dict:  # type: ignore[type-arg]
    """Rebuild one student's cached totals from the ledger."""
    db = await _get_db_session()
    try:
        totals = await recompute_student_points(db, student_id, ctx.get("redis"))
    finally:
        await db.close()
    logger.info("Recomputed student %d: balance=%d lifetime=%d level=%d",
                student_id, totals.balance, totals.lifetime, totals.level)
    return {"balance": totals.balance, "lifetime": totals.lifetime, "level": totals.level}


async def sweep_badges(
    ctx: dict,  # type: ignore[type-arg]
    rule_id: str | None = None,
    student_id: int | None = None,
) -> dict:
    """Run the badge sweep. Per-rule failures are reported, not raised."""
    db = await _get_db_session()
    try:
        report = await sweep(db, ctx.get("redis"), rule_id=rule_id, student_id=student_id)
    finally:
        await db.close()
    if report.failed_rules:
        logger.error("Badge sweep finished with failed rules: %s", report.failed_rules)
    return {"total_awarded": report.total_awarded, "failed_rules": report.failed_rules}


async def nightly_badge_sweep(ctx: dict) -> dict:  # type: ignore[type-arg]
    """Cron entry point: sweep every enabled rule over every student."""
    return await sweep_badges(ctx)
