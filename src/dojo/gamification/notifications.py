"""Student notifications: persisted row plus a Redis pub/sub fan-out.

Delivery over Redis is fire-and-forget. Subscribers pattern-subscribe to
``ws:student:*`` and route the payload to the student's open sessions.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from dojo.db.models import Notification

logger = logging.getLogger(__name__)


async def push_notification(redis: object | None, notification: Notification) -> None:
    """Publish a flushed notification to ``ws:student:{student_id}``."""
    if redis is None:
        return

    payload = {
        "event": "notification",
        "data": {
            "id": str(notification.id),
            "kind": notification.kind,
            "message": notification.message,
            "timestamp": (
                notification.created_at.isoformat()
                if notification.created_at
                else None
            ),
            "read": False,
        },
    }
    try:
        await redis.publish(  # type: ignore[union-attr]
            f"ws:student:{notification.student_id}",
            json.dumps(payload),
        )
    except Exception:
        logger.warning(
            "Failed to push notification via ws:student:%s",
            notification.student_id,
            exc_info=True,
        )


async def notify(
    db: AsyncSession,
    redis: object | None,
    student_id: int,
    kind: str,
    message: str,
) -> Notification:
    """Write a notification row and push it. The caller commits."""
    notification = Notification(
        student_id=student_id,
        kind=kind,
        message=message,
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()  # assigns notification.id for the push payload

    await push_notification(redis, notification)
    return notification
