"""Period sweep: applies period-boundary transitions to subscriptions that are due.

Run as a separate process::

    python -m app.workers.period_sweep            # loop forever
    python -m app.workers.period_sweep --once     # single pass, then exit

Each batch is locked with ``FOR UPDATE SKIP LOCKED`` and committed in its own
transaction, so several workers can run side by side. Every row is closed in
its own savepoint; a row that cannot be closed is logged and skipped for the
rest of the pass.
"""

import argparse
import asyncio
import logging
import uuid
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.billing.errors import BillingError
from app.config import settings
from app.database import async_session_factory, engine, utcnow
from app.services import subscription_service

logger = logging.getLogger(__name__)


@dataclass
class SweepBatch:
    closed: list[uuid.UUID] = field(default_factory=list)
    failed: list[uuid.UUID] = field(default_factory=list)

    @property
    def handled(self) -> int:
        return len(self.closed) + len(self.failed)


async def sweep_batch(
    db: AsyncSession,
    *,
    now: datetime,
    limit: int,
    exclude: Collection[uuid.UUID] = (),
) -> SweepBatch:
    """Close the period of up to ``limit`` due subscriptions.

    Flushes only; the caller commits.
    """
    due = await subscription_service.lock_due_subscriptions(
        db,
        now=now,
        limit=limit,
        grace=timedelta(hours=settings.renewal_grace_hours),
        exclude=exclude,
    )
    batch = SweepBatch()
    for subscription in due:
        subscription_id = subscription.id
        try:
            async with db.begin_nested():
                await subscription_service.close_period(db, subscription, now=now)
        except (BillingError, StaleDataError):
            logger.exception("Could not close period of subscription %s, skipping", subscription_id)
            batch.failed.append(subscription_id)
        else:
            batch.closed.append(subscription_id)
    return batch


async def run_once(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> int:
    """Sweep until no due subscriptions remain. Returns the number of periods closed."""
    now = now or utcnow()
    batch_size = batch_size or settings.sweep_batch_size
    total = 0
    skipped: set[uuid.UUID] = set()

    while True:
        async with session_factory() as db:
            try:
                batch = await sweep_batch(db, now=now, limit=batch_size, exclude=skipped)
                await db.commit()
            except SQLAlchemyError:
                await db.rollback()
                logger.exception("Period sweep batch failed, rolled back")
                raise
        total += len(batch.closed)
        skipped.update(batch.failed)
        if batch.handled < batch_size:
            break

    if total:
        logger.info("Period sweep closed %d subscription period(s)", total)
    if skipped:
        logger.warning("Period sweep skipped %d subscription(s) that could not be closed", len(skipped))
    return total


async def run_forever(interval_seconds: int) -> None:
    logger.info("Period sweep started (interval %ss)", interval_seconds)
    while True:
        try:
            await run_once()
        except SQLAlchemyError:
            logger.warning("Period sweep pass aborted, retrying in %ss", interval_seconds)
        await asyncio.sleep(interval_seconds)


async def main(once: bool = False) -> None:
    try:
        if once:
            await run_once()
        else:
            await run_forever(settings.sweep_interval_seconds)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Apply subscription period boundaries.")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main(once=args.once))
