from __future__ import annotations
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Sequence, TypeVar
import logging
import random
import time

import pandas as pd
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from epc_trends.analyzer import calculate_trend
from epc_trends.config import settings
from epc_trends.errors import StoreReadError, StoreWriteError
from epc_trends.models import Observation, TrendRecord
from epc_trends.storage import get_observations, upsert_trend_record

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _sleep_jitter(seconds: float):
    time.sleep(seconds + random.uniform(0, seconds))


def _with_retry(fn: Callable[[], T], *, retries: int, base_sleep: float, what: str) -> T:
    """
    Run `fn`, retrying transient (OperationalError) failures with exponential
    backoff: base, 2*base, 4*base... Other database errors are raised at once.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except OperationalError as e:
            attempt += 1
            if attempt > retries:
                raise
            wait = (2 ** (attempt - 1)) * base_sleep
            logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s",
                           what, attempt, retries, wait, e)
            _sleep_jitter(wait)


def dense_series(observations: Iterable[Observation], as_of: date, length: int) -> pd.Series:
    """
    EPC values for the `length` calendar days ending at `as_of`, oldest first.
    Days without an observation are 0; observations outside the range are ignored.
    """
    days = pd.date_range(end=pd.Timestamp(as_of), periods=length, freq="D")
    values = {pd.Timestamp(o.date): float(o.value) for o in observations}
    s = pd.Series(values, dtype=float)
    return s.reindex(days, fill_value=0.0)


def build_trend_record(
    entity_id: int,
    observations: Iterable[Observation],
    as_of: date,
    windows: Sequence[int],
    now: Optional[datetime] = None,
) -> TrendRecord:
    sizes = sorted(set(int(w) for w in windows))
    if not sizes or sizes[0] <= 0:
        raise ValueError(f"invalid window sizes: {list(windows)}")

    series = dense_series(observations, as_of, sizes[-1])
    values = series.to_numpy()

    return TrendRecord(
        entity_id=entity_id,
        windows={w: calculate_trend(values[-w:]) for w in sizes},
        last_calculated_at=now or datetime.now(timezone.utc),
    )


def process_daily_epc_trend(
    entity_id: int,
    new_epc_value: float,
    as_of_date: date,
    *,
    windows: Optional[Sequence[int]] = None,
    engine: Optional[Engine] = None,
    retries: Optional[int] = None,
    base_sleep: Optional[float] = None,
    now: Optional[datetime] = None,
) -> TrendRecord:
    """
    Recompute and store the trend record of one entity as of `as_of_date`.

    The observation for `as_of_date` must already be persisted; `new_epc_value`
    is only logged. Raises StoreReadError (record untouched) or StoreWriteError
    (previous record kept).
    """
    windows = tuple(windows or settings.trend_windows)
    retries = settings.trend_retries if retries is None else retries
    base_sleep = settings.trend_base_sleep if base_sleep is None else base_sleep
    span = max(windows)
    start = as_of_date - timedelta(days=span)

    try:
        observations = _with_retry(
            lambda: get_observations(entity_id, start, as_of_date, engine=engine),
            retries=retries, base_sleep=base_sleep, what=f"EPC history read for entity {entity_id}",
        )
    except SQLAlchemyError as e:
        raise StoreReadError(f"could not read EPC history for entity {entity_id}") from e

    record = build_trend_record(entity_id, observations, as_of_date, windows, now=now)

    try:
        _with_retry(
            lambda: upsert_trend_record(record, engine=engine),
            retries=retries, base_sleep=base_sleep, what=f"trend upsert for entity {entity_id}",
        )
    except SQLAlchemyError as e:
        raise StoreWriteError(f"could not store trend record for entity {entity_id}") from e

    logger.debug(
        "entity %s as of %s (new EPC %s): %s",
        entity_id, as_of_date, new_epc_value,
        ", ".join(f"{w}d={record.category(w).value}" for w in sorted(record.windows)),
    )
    return record
