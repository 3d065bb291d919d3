from __future__ import annotations
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, Engine

from epc_trends.analyzer import TrendCategory, WindowTrend
from epc_trends.db import get_engine
from epc_trends.models import Observation, TrendRecord

DateLike = Union[date, str]


def _iso(d: DateLike) -> str:
    if isinstance(d, datetime):
        return d.date().isoformat()
    if isinstance(d, date):
        return d.isoformat()
    return date.fromisoformat(str(d)[:10]).isoformat()


def _as_date(v: Any) -> date:
    # Postgres hands back date objects, SQLite hands back text
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def _as_datetime(v: Any) -> Optional[datetime]:
    if v is None:
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        dt = datetime.fromisoformat(str(v))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ------------------------------
# EPC observations (time-series store)
# ------------------------------
_UPSERT_OBSERVATION = text("""
    INSERT INTO daily_epc(entity_id, date, epc_value)
    VALUES (:entity_id, :date, :value)
    ON CONFLICT (entity_id, date)
    DO UPDATE SET epc_value=excluded.epc_value, collected_at=CURRENT_TIMESTAMP;
""")


def upsert_observations(rows: Iterable[Tuple[int, DateLike, float]], *, conn: Optional[Connection] = None,
                        engine: Optional[Engine] = None):
    """
    rows: (entity_id, date, epc_value). Re-ingesting a day replaces its value.
    """
    payload = [
        {"entity_id": int(e), "date": _iso(d), "value": float(v)}
        for (e, d, v) in rows
    ]
    if not payload:
        return

    if conn is not None:
        conn.execute(_UPSERT_OBSERVATION, payload)
        return
    with get_engine(engine).begin() as c:
        c.execute(_UPSERT_OBSERVATION, payload)


def upsert_observation(entity_id: int, day: DateLike, value: float, *, engine: Optional[Engine] = None):
    upsert_observations([(entity_id, day, value)], engine=engine)


def get_observations(entity_id: int, start: DateLike, end: DateLike, *,
                     engine: Optional[Engine] = None) -> List[Observation]:
    """Observations in [start, end], oldest first. Days without data are simply absent."""
    q = text("""
        SELECT date, epc_value
        FROM daily_epc
        WHERE entity_id = :entity_id
          AND date >= :start AND date <= :end
        ORDER BY date ASC
    """)
    with get_engine(engine).begin() as conn:
        rows = conn.execute(q, {"entity_id": entity_id, "start": _iso(start), "end": _iso(end)}).fetchall()

    return [Observation(entity_id=entity_id, date=_as_date(r[0]), value=float(r[1])) for r in rows]


def list_observed_entities(*, engine: Optional[Engine] = None) -> List[int]:
    q = text("SELECT DISTINCT entity_id FROM daily_epc ORDER BY entity_id")
    with get_engine(engine).begin() as conn:
        return [int(r[0]) for r in conn.execute(q).fetchall()]


# ------------------------------
# Trend records
# ------------------------------
def upsert_trend_record(record: TrendRecord, *, engine: Optional[Engine] = None):
    """
    Replace every window of the entity's trend record in one transaction.
    Window rows missing from `record` are dropped so the stored record
    always matches a single calculation.
    """
    if not record.windows:
        raise ValueError(f"trend record {record.entity_id} has no windows")

    calculated_at = (record.last_calculated_at or datetime.now(timezone.utc)).isoformat()

    upsert = text("""
        INSERT INTO entity_trends(entity_id, window_days, avg_epc, slope, category, last_calculated_at)
        VALUES (:entity_id, :window_days, :avg_epc, :slope, :category, :calculated_at)
        ON CONFLICT (entity_id, window_days)
        DO UPDATE SET avg_epc=excluded.avg_epc,
                      slope=excluded.slope,
                      category=excluded.category,
                      last_calculated_at=excluded.last_calculated_at;
    """)
    prune = text("""
        DELETE FROM entity_trends
        WHERE entity_id = :entity_id AND window_days NOT IN :days
    """).bindparams(bindparam("days", expanding=True))

    payload = [
        {
            "entity_id": record.entity_id,
            "window_days": days,
            "avg_epc": w.avg_epc,
            "slope": w.slope,
            "category": w.category.value,
            "calculated_at": calculated_at,
        }
        for days, w in sorted(record.windows.items())
    ]
    with get_engine(engine).begin() as conn:
        conn.execute(upsert, payload)
        conn.execute(prune, {"entity_id": record.entity_id, "days": sorted(record.windows)})


def _records_from_rows(rows) -> Dict[int, TrendRecord]:
    out: Dict[int, TrendRecord] = {}
    for entity_id, days, avg_epc, slope, category, calculated_at in rows:
        rec = out.setdefault(int(entity_id), TrendRecord(entity_id=int(entity_id)))
        rec.windows[int(days)] = WindowTrend(
            slope=float(slope),
            category=TrendCategory(category),
            avg_epc=float(avg_epc),
        )
        ts = _as_datetime(calculated_at)
        if rec.last_calculated_at is None or (ts and ts > rec.last_calculated_at):
            rec.last_calculated_at = ts
    return out


def get_trend_records(entity_ids: Sequence[int], *, engine: Optional[Engine] = None) -> Dict[int, TrendRecord]:
    """entity_id -> TrendRecord; entities never calculated are left out."""
    ids = sorted({int(e) for e in entity_ids})
    if not ids:
        return {}
    q = text("""
        SELECT entity_id, window_days, avg_epc, slope, category, last_calculated_at
        FROM entity_trends
        WHERE entity_id IN :ids
        ORDER BY entity_id, window_days
    """).bindparams(bindparam("ids", expanding=True))
    with get_engine(engine).begin() as conn:
        rows = conn.execute(q, {"ids": ids}).fetchall()
    return _records_from_rows(rows)


def get_trend_record(entity_id: int, *, engine: Optional[Engine] = None) -> Optional[TrendRecord]:
    return get_trend_records([entity_id], engine=engine).get(int(entity_id))


def find_trend_records(
    window_days: int,
    category: Optional[Union[TrendCategory, str]] = None,
    min_slope: Optional[float] = None,
    max_slope: Optional[float] = None,
    min_avg_epc: Optional[float] = None,
    limit: Optional[int] = None,
    *,
    engine: Optional[Engine] = None,
) -> List[TrendRecord]:
    """
    Trend records whose `window_days` window matches every given filter,
    highest average EPC first.
    """
    clauses = ["window_days = :window_days"]
    params: Dict[str, Any] = {"window_days": int(window_days)}

    if category is not None:
        clauses.append("category = :category")
        params["category"] = TrendCategory(category).value
    if min_slope is not None:
        clauses.append("slope >= :min_slope")
        params["min_slope"] = float(min_slope)
    if max_slope is not None:
        clauses.append("slope <= :max_slope")
        params["max_slope"] = float(max_slope)
    if min_avg_epc is not None:
        clauses.append("avg_epc >= :min_avg_epc")
        params["min_avg_epc"] = float(min_avg_epc)

    sql = f"""
        SELECT entity_id
        FROM entity_trends
        WHERE {" AND ".join(clauses)}
        ORDER BY avg_epc DESC, entity_id ASC
    """
    if limit is not None:
        sql += " LIMIT :limit"
        params["limit"] = int(limit)

    with get_engine(engine).begin() as conn:
        ids = [int(r[0]) for r in conn.execute(text(sql), params).fetchall()]

    records = get_trend_records(ids, engine=engine)
    return [records[e] for e in ids if e in records]


# ------------------------------
# Advertisers / snapshots
# ------------------------------
def upsert_advertiser(conn: Connection, data: Dict[str, Any]) -> int:
    """Insert or refresh an advertiser row, returning its internal id."""
    q = text("""
        INSERT INTO advertisers(adv_id, adv_name, m_id, adv_category, adv_type, mailing_region,
                                approval_type, approval_type_text, adv_logo)
        VALUES (:adv_id, :adv_name, :m_id, :adv_category, :adv_type, :mailing_region,
                :approval_type, :approval_type_text, :adv_logo)
        ON CONFLICT (adv_id) DO UPDATE SET
          adv_name=excluded.adv_name,
          m_id=excluded.m_id,
          adv_category=excluded.adv_category,
          adv_type=excluded.adv_type,
          mailing_region=excluded.mailing_region,
          approval_type=excluded.approval_type,
          approval_type_text=excluded.approval_type_text,
          adv_logo=excluded.adv_logo,
          updated_at=CURRENT_TIMESTAMP
        RETURNING id;
    """)
    adv_id = str(data["adv_id"])
    row_id = conn.execute(q, {
        "adv_id": adv_id,
        "adv_name": data.get("adv_name") or adv_id,
        "m_id": data.get("m_id"),
        "adv_category": data.get("adv_category"),
        "adv_type": data.get("adv_type"),
        "mailing_region": data.get("mailing_region"),
        "approval_type": data.get("approval_type"),
        "approval_type_text": data.get("approval_type_text"),
        "adv_logo": data.get("adv_logo"),
    }).scalar_one()
    return int(row_id)


def upsert_snapshot(conn: Connection, advertiser_id: int, snapshot_date: DateLike, data: Dict[str, Any],
                    epc_30: Optional[float], rate_30: Optional[float]):
    q = text("""
        INSERT INTO advertiser_snapshots(advertiser_id, snapshot_date, monthly_visits, rd, epc_30, rate_30,
                                         aff_ba, aff_ba_unit, aff_ba_text, join_status, join_status_text)
        VALUES (:advertiser_id, :snapshot_date, :monthly_visits, :rd, :epc_30, :rate_30,
                :aff_ba, :aff_ba_unit, :aff_ba_text, :join_status, :join_status_text)
        ON CONFLICT (advertiser_id, snapshot_date) DO UPDATE SET
          monthly_visits=excluded.monthly_visits,
          rd=excluded.rd,
          epc_30=excluded.epc_30,
          rate_30=excluded.rate_30,
          aff_ba=excluded.aff_ba,
          aff_ba_unit=excluded.aff_ba_unit,
          aff_ba_text=excluded.aff_ba_text,
          join_status=excluded.join_status,
          join_status_text=excluded.join_status_text;
    """)
    conn.execute(q, {
        "advertiser_id": advertiser_id,
        "snapshot_date": _iso(snapshot_date),
        "monthly_visits": data.get("monthly_visits"),
        "rd": data.get("rd"),
        "epc_30": epc_30,
        "rate_30": rate_30,
        "aff_ba": data.get("aff_ba"),
        "aff_ba_unit": data.get("aff_ba_unit"),
        "aff_ba_text": data.get("aff_ba_text"),
        "join_status": data.get("join_status"),
        "join_status_text": data.get("join_status_text"),
    })


def get_entity_id(adv_id: str, *, engine: Optional[Engine] = None) -> Optional[int]:
    q = text("SELECT id FROM advertisers WHERE adv_id = :adv_id")
    with get_engine(engine).begin() as conn:
        row = conn.execute(q, {"adv_id": str(adv_id)}).fetchone()
    return int(row[0]) if row else None


def count_snapshots_for_date(day: DateLike, *, engine: Optional[Engine] = None) -> int:
    q = text("SELECT COUNT(*) FROM advertiser_snapshots WHERE snapshot_date = :d")
    with get_engine(engine).begin() as conn:
        return int(conn.execute(q, {"d": _iso(day)}).scalar() or 0)


def get_epc_history(adv_ids: Sequence[str], period: int, end: DateLike, *,
                    engine: Optional[Engine] = None) -> Dict[str, Dict[str, List[Any]]]:
    """
    Dense EPC history for charting: adv_id -> {"history": [...], "labels": [...]},
    `period` days ending at `end`, zero where no observation exists.
    """
    if not adv_ids:
        return {}
    end_d = _as_date(end)
    start_d = end_d - timedelta(days=period - 1)

    q = text("""
        SELECT a.adv_id, e.date, e.epc_value
        FROM advertisers a
        LEFT JOIN daily_epc e
          ON e.entity_id = a.id AND e.date >= :start AND e.date <= :end
        WHERE a.adv_id IN :adv_ids
        ORDER BY a.adv_id, e.date
    """).bindparams(bindparam("adv_ids", expanding=True))
    with get_engine(engine).begin() as conn:
        rows = conn.execute(q, {
            "start": _iso(start_d), "end": _iso(end_d), "adv_ids": [str(a) for a in adv_ids],
        }).fetchall()

    days = pd.date_range(start=start_d, end=end_d, freq="D")
    labels = [d.strftime("%m-%d") for d in days]

    by_adv: Dict[str, Dict[date, float]] = {}
    for adv_id, d, v in rows:
        values = by_adv.setdefault(adv_id, {})
        if d is not None:
            values[_as_date(d)] = float(v)

    out: Dict[str, Dict[str, List[Any]]] = {}
    for adv_id, values in by_adv.items():
        s = pd.Series(values, dtype=float)
        s.index = pd.to_datetime(s.index)
        dense = s.reindex(days, fill_value=0.0)
        out[adv_id] = {"history": [float(v) for v in dense.to_numpy()], "labels": list(labels)}
    return out


# ------------------------------
# Crawl logs
# ------------------------------
def create_crawl_log(crawl_date: DateLike, start_time: datetime, status: str = "RUNNING", *,
                     engine: Optional[Engine] = None) -> int:
    q = text("""
        INSERT INTO crawl_logs(crawl_date, start_time, status, total_advertisers, success_count, error_count)
        VALUES (:crawl_date, :start_time, :status, 0, 0, 0)
        RETURNING id;
    """)
    with get_engine(engine).begin() as conn:
        log_id = conn.execute(q, {
            "crawl_date": _iso(crawl_date), "start_time": start_time.isoformat(), "status": status,
        }).scalar_one()
    return int(log_id)


_CRAWL_LOG_FIELDS = (
    "end_time", "duration_seconds", "total_advertisers",
    "success_count", "error_count", "status", "error_message",
)


def finish_crawl_log(log_id: int, *, engine: Optional[Engine] = None, **fields: Any):
    unknown = set(fields) - set(_CRAWL_LOG_FIELDS)
    if unknown:
        raise ValueError(f"unknown crawl log fields: {sorted(unknown)}")
    if not fields:
        return

    params: Dict[str, Any] = {"id": log_id}
    sets = []
    for k, v in fields.items():
        sets.append(f"{k}=:{k}")
        params[k] = v.isoformat() if isinstance(v, datetime) else v

    with get_engine(engine).begin() as conn:
        conn.execute(text(f"UPDATE crawl_logs SET {', '.join(sets)} WHERE id=:id"), params)


def get_crawl_logs(limit: int = 10, *, engine: Optional[Engine] = None) -> List[Dict[str, Any]]:
    q = text("""
        SELECT id, crawl_date, start_time, end_time, duration_seconds,
               total_advertisers, success_count, error_count, status, error_message
        FROM crawl_logs
        ORDER BY id DESC
        LIMIT :limit
    """)
    with get_engine(engine).begin() as conn:
        rows = conn.execute(q, {"limit": limit}).fetchall()

    return [{
        "id": int(r[0]),
        "crawl_date": _as_date(r[1]),
        "start_time": _as_datetime(r[2]),
        "end_time": _as_datetime(r[3]),
        "duration_seconds": r[4],
        "total_advertisers": int(r[5]),
        "success_count": int(r[6]),
        "error_count": int(r[7]),
        "status": r[8],
        "error_message": r[9],
    } for r in rows]
