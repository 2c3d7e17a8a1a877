"""Audit log and outbox: every transition writes both in its own transaction."""

import enum
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from matchpoint.models.audit import AuditEvent, OutboxEvent

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

EventHandler = Callable[[OutboxEvent], Awaitable[None]]


def actor_label(actor: uuid.UUID | str | None) -> str:
    """Normalise an actor id (user UUID, ``system``) for storage."""
    if actor is None:
        return SYSTEM_ACTOR
    return str(actor)


async def record_event(
    db: AsyncSession,
    *,
    subject_type: str,
    subject_id: uuid.UUID | str,
    event_type: str,
    summary: str,
    actor: uuid.UUID | str | None = None,
    payload: dict[str, Any] | None = None,
) -> AuditEvent:
    """Append an audit event and its outbox twin to the current transaction.

    Both rows commit or roll back together with the state change they
    describe, so consumers never see an event for a change that did not
    happen.
    """
    data = {
        "subject_type": subject_type,
        "subject_id": str(subject_id),
        **(payload or {}),
    }
    event = AuditEvent(
        subject_type=subject_type,
        subject_id=str(subject_id),
        event_type=event_type,
        summary=summary,
        actor=actor_label(actor),
        payload=_json_safe(payload) if payload else None,
    )
    db.add(event)
    db.add(OutboxEvent(event_type=event_type, payload=_json_safe(data)))
    await db.flush()
    logger.debug("Audit %s on %s:%s by %s", event_type, subject_type, subject_id, event.actor)
    return event


async def list_events(
    db: AsyncSession, subject_type: str, subject_id: uuid.UUID | str
) -> list[AuditEvent]:
    """Return the audit trail for one subject, oldest first."""
    result = await db.execute(
        select(AuditEvent)
        .where(AuditEvent.subject_type == subject_type, AuditEvent.subject_id == str(subject_id))
        .order_by(AuditEvent.created_at, AuditEvent.id)
    )
    return list(result.scalars().all())


async def dispatch_outbox(
    db: AsyncSession,
    handlers: Mapping[str, list[EventHandler]],
    batch_size: int = 100,
) -> int:
    """Deliver undelivered outbox events to their subscribers.

    A failing subscriber never propagates into the core: the error is
    recorded on the row and the event is retried on the next pass.
    Returns the number of events marked delivered.
    """
    result = await db.execute(
        select(OutboxEvent)
        .where(OutboxEvent.delivered_at.is_(None))
        .order_by(OutboxEvent.created_at)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    delivered = 0
    for event in result.scalars().all():
        event.attempts += 1
        try:
            for handler in handlers.get(event.event_type, []) + handlers.get("*", []):
                await handler(event)
        except Exception as exc:  # subscriber failures are isolated from the core
            logger.exception("Outbox handler failed for event %s (%s)", event.id, event.event_type)
            event.last_error = str(exc)[:1000]
            continue
        event.delivered_at = datetime.now(timezone.utc)
        event.last_error = None
        delivered += 1
    await db.flush()
    if delivered:
        logger.info("Dispatched %d outbox events", delivered)
    return delivered


def _json_safe(data: dict[str, Any]) -> dict[str, Any]:
    """Stringify values JSON cannot carry (UUIDs, datetimes, enums)."""
    safe: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, enum.Enum):
            safe[key] = value.value
        elif value is None or isinstance(value, (bool, int, float, str)):
            safe[key] = value
        else:
            safe[key] = str(value)
    return safe
