# epc_trends/backfill.py
from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy.engine import Engine

from epc_trends.config import settings
from epc_trends.driver import BatchResult, run_trend_batch
from epc_trends.maintainer import build_trend_record
from epc_trends.storage import get_observations, list_observed_entities

HISTORY_COLUMNS = ["as_of_date", "entity_id", "window_days", "avg_epc", "slope", "category"]


def recalculate_all(
    as_of: date,
    *,
    windows: Optional[Sequence[int]] = None,
    engine: Optional[Engine] = None,
    **batch_kwargs: Any,
) -> BatchResult:
    """
    Re-run the trend update for every entity that has EPC observations,
    as if each had just been ingested on `as_of`.
    """
    items = []
    for entity_id in list_observed_entities(engine=engine):
        today = get_observations(entity_id, as_of, as_of, engine=engine)
        items.append((entity_id, today[0].value if today else 0.0, as_of))

    return run_trend_batch(items, windows=windows, engine=engine, **batch_kwargs)


def trend_history(
    as_of: date,
    days: int,
    *,
    windows: Optional[Sequence[int]] = None,
    engine: Optional[Engine] = None,
) -> pd.DataFrame:
    """
    Classification of every entity for each of the `days` days ending at
    `as_of`, computed from stored observations without touching trend records.

    - days: how many as-of dates to REPORT
    - history is pulled from max(window) days before the first reported date
      so every window is computed on the same data the daily run would see
    """
    windows = tuple(windows or settings.trend_windows)
    report_start = as_of - timedelta(days=days - 1)
    pull_start = report_start - timedelta(days=max(windows))

    rows: List[Dict[str, Any]] = []
    for entity_id in list_observed_entities(engine=engine):
        observations = get_observations(entity_id, pull_start, as_of, engine=engine)
        if not observations:
            continue

        for i in range(days):
            day = report_start + timedelta(days=i)
            visible = [o for o in observations if o.date <= day]
            record = build_trend_record(entity_id, visible, day, windows)
            for w in sorted(record.windows):
                t = record.windows[w]
                rows.append({
                    "as_of_date": day.isoformat(),
                    "entity_id": entity_id,
                    "window_days": w,
                    "avg_epc": t.avg_epc,
                    "slope": t.slope,
                    "category": t.category.value,
                })

    if not rows:
        return pd.DataFrame(columns=HISTORY_COLUMNS)

    out = pd.DataFrame(rows, columns=HISTORY_COLUMNS)
    # newest first, then entity / window
    return out.sort_values(
        ["as_of_date", "entity_id", "window_days"],
        ascending=[False, True, True],
    ).reset_index(drop=True)
