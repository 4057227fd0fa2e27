"""
Background Reward Settler
=========================

Runs every ``REWARD_SETTLE_INTERVAL_SECONDS`` (default 30 s).

Booking transitions queue their ledger side effects as ``reward_claims``
rows and apply them straight after committing.  Whatever could not be
applied then (ledger error, insufficient balance for a clawback, process
crash between the two commits) stays ``pending`` and is picked up here.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance runs the settle
  cycle at a time across multiple API processes.
* The ledger is keyed by the claim reference, so a claim applied twice
  still writes a single transaction.
"""

from __future__ import annotations

import asyncio
import logging

from freightbook.config import settings
from freightbook.infrastructure.database import async_session_factory
from freightbook.infrastructure.locks import DistributedLock, LockNotAcquired
from freightbook.infrastructure.redis_client import get_redis
from freightbook.services.settlement import RewardSettlement

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_settle_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Reward settler started (interval=%ds)",
        settings.reward_settle_interval_seconds,
    )


async def stop_settle_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Reward settler stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_settle_cycle()
        except Exception:
            logger.exception("Unhandled error in reward settle cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.reward_settle_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_settle_cycle(session_factory=None) -> int:
    """Execute one settle cycle.  Returns the number of claims applied."""
    redis = await get_redis()
    factory = session_factory or async_session_factory
    try:
        async with DistributedLock(
            redis, "reward_settler", ttl_seconds=settings.reward_settle_lock_ttl_seconds
        ):
            async with factory() as session:
                return await RewardSettlement(session).settle_pending()
    except LockNotAcquired:
        logger.debug("Lock held by another worker – skipping cycle")
        return 0
