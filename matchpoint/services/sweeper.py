"""Periodic maintenance passes and the background task that runs them.

Each sweep runs in its own transaction so one failing pass never blocks
the others. Every sweep is idempotent and safe to run from several
processes at once (rows are claimed with ``SKIP LOCKED``). Gateway sweeps
call out to payment providers, so they manage their own short
transactions instead.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from matchpoint.config import settings
from matchpoint.payments.settlement import expire_card_charges, reconcile_stale_entries
from matchpoint.services.audit_service import EventHandler, dispatch_outbox
from matchpoint.services.enrollment_service import expire_enrollments
from matchpoint.services.reservation_service import expire_unpaid_reservations, sweep_no_shows

logger = logging.getLogger(__name__)

Sweep = Callable[[AsyncSession, datetime], Awaitable[int]]
GatewaySweep = Callable[[async_sessionmaker[AsyncSession], datetime], Awaitable[int]]

SWEEPS: dict[str, Sweep] = {
    "ledger_reconciliation": reconcile_stale_entries,
    "unpaid_expiry": expire_unpaid_reservations,
    "no_shows": sweep_no_shows,
    "enrollment_expiry": expire_enrollments,
}

GATEWAY_SWEEPS: dict[str, GatewaySweep] = {
    "card_expiry": expire_card_charges,
}


async def run_sweeps(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    outbox_handlers: Mapping[str, list[EventHandler]] | None = None,
) -> dict[str, int]:
    """Run every sweep once and return how many rows each one touched."""
    now = now or datetime.now(timezone.utc)
    results: dict[str, int] = {}
    for name, gateway_sweep in GATEWAY_SWEEPS.items():
        try:
            results[name] = await gateway_sweep(session_factory, now)
        except Exception:
            logger.exception("Sweep %s failed", name)
            results[name] = 0

    for name, sweep in SWEEPS.items():
        try:
            async with session_factory() as db, db.begin():
                results[name] = await sweep(db, now)
        except Exception:
            logger.exception("Sweep %s failed", name)
            results[name] = 0

    if outbox_handlers is not None:
        try:
            async with session_factory() as db, db.begin():
                results["outbox"] = await dispatch_outbox(db, outbox_handlers)
        except Exception:
            logger.exception("Outbox dispatch failed")
            results["outbox"] = 0
    return results


async def sweeper_loop(
    session_factory: async_sessionmaker[AsyncSession],
    outbox_handlers: Mapping[str, list[EventHandler]] | None = None,
    interval_seconds: int | None = None,
) -> None:
    """Run the sweeps forever; cancelled by the application lifespan."""
    interval = interval_seconds or settings.sweeper_interval_seconds
    logger.info("Background sweeper started (every %ds)", interval)
    while True:
        results = await run_sweeps(session_factory, outbox_handlers=outbox_handlers)
        if any(results.values()):
            logger.info("Sweep results: %s", results)
        await asyncio.sleep(interval)


async def log_delivery(event) -> None:
    """Default subscriber until the notifier and reporting consumers are wired in."""
    logger.info("Domain event %s: %s", event.event_type, event.payload)


DEFAULT_OUTBOX_HANDLERS: dict[str, list[EventHandler]] = {"*": [log_delivery]}
