"""Notification outbox.

Rows are added to the caller's session so they commit atomically with the
settlement change that produced them. Delivery (email, push, chat) reads the
pending rows and is not part of this service.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification import Notification, NotificationStatus

logger = logging.getLogger(__name__)

_EVENT_TITLES = {
    "escrow.funded": "Escrow funded",
    "escrow.cancelled": "Escrow cancelled",
    "milestone.submitted": "Milestone submitted",
    "milestone.approved": "Milestone approved",
    "milestone.revision_requested": "Revision requested",
    "milestone.claimed": "Milestone payment claimed",
    "project.completed": "Project completed",
}


def notify(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    event_type: str,
    message: str,
    details: dict | None = None,
) -> Notification:
    """Queue a notification for a profile."""
    notification = Notification(
        notification_id=uuid.uuid4(),
        recipient_id=recipient_id,
        event_type=event_type,
        title=_EVENT_TITLES.get(event_type, event_type),
        message=message,
        payload={
            "event": event_type,
            "timestamp": datetime.now(UTC).isoformat(),
            **(details or {}),
        },
        status=NotificationStatus.PENDING,
    )
    db.add(notification)
    logger.info("Notification queued: %s -> %s", event_type, recipient_id)
    return notification
