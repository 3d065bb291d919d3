from __future__ import annotations
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import time

from tqdm import tqdm

from epc_trends.config import settings
from epc_trends.maintainer import process_daily_epc_trend

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    failed_entities: List[int] = field(default_factory=list)


def on_observation_persisted(entity_id: int, value: float, as_of: date, **kwargs: Any) -> bool:
    """
    Hook fired after an entity's daily EPC observation is committed.
    Failures are logged and reported as False, never raised.
    """
    try:
        process_daily_epc_trend(entity_id, value, as_of, **kwargs)
        return True
    except Exception:
        logger.exception("trend update failed for entity %s as of %s", entity_id, as_of)
        return False


def run_trend_batch(
    items: Iterable[Tuple[int, float, date]],
    *,
    max_workers: Optional[int] = None,
    timeout: Optional[float] = None,
    progress: bool = False,
    **kwargs: Any,
) -> BatchResult:
    """
    Fire the hook for every (entity_id, value, as_of) item, at most
    `max_workers` at a time. Each entity gets `timeout` seconds from the
    moment it starts before it is counted as failed.

    A timed-out entity keeps its thread until it returns but no longer counts
    against `max_workers`, so queued entities still get their own full timeout.
    """
    pending = deque(items)
    max_workers = max_workers or settings.trend_workers
    timeout = settings.trend_timeout_seconds if timeout is None else timeout
    result = BatchResult()
    if not pending:
        return result

    # threads are spawned on demand; stragglers past their timeout may hold a few extra
    pool = ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix="epc-trend")
    running: Dict[Future, Tuple[int, date, float]] = {}
    bar = tqdm(total=len(pending), desc="trend", unit="entity", disable=not progress)
    try:
        while pending or running:
            while pending and len(running) < max_workers:
                entity_id, value, as_of = pending.popleft()
                fut = pool.submit(on_observation_persisted, entity_id, value, as_of, **kwargs)
                running[fut] = (entity_id, as_of, time.monotonic() + timeout)

            next_deadline = min(deadline for _, _, deadline in running.values())
            wait(running, timeout=max(0.0, next_deadline - time.monotonic()), return_when=FIRST_COMPLETED)

            now = time.monotonic()
            for fut, (entity_id, as_of, deadline) in list(running.items()):
                if fut.done():
                    ok = fut.result()
                elif now >= deadline:
                    logger.error("trend update timed out for entity %s as of %s (%.1fs)", entity_id, as_of, timeout)
                    ok = False
                else:
                    continue

                del running[fut]
                bar.update(1)
                if ok:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    result.failed_entities.append(entity_id)
    finally:
        bar.close()
        pool.shutdown(wait=False, cancel_futures=True)

    logger.info("trend batch done: %d ok, %d failed", result.succeeded, result.failed)
    return result
