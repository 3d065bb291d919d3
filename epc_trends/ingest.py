from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import math

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from epc_trends.db import get_engine
from epc_trends.driver import BatchResult, run_trend_batch
from epc_trends.linkhaitao_provider import AdvertiserPage
from epc_trends.storage import (
    create_crawl_log, finish_crawl_log,
    upsert_advertiser, upsert_observations, upsert_snapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    crawl_log_id: int
    total: int = 0
    success_count: int = 0
    error_count: int = 0
    duration_seconds: int = 0
    failed_pages: List[int] = field(default_factory=list)
    observations: List[Tuple[int, float, date]] = field(default_factory=list)
    trends: Optional[BatchResult] = None


def parse_epc(raw: Any) -> Optional[float]:
    """'1.25', '$1,025.50', 0.3 -> float; blanks and junk -> None."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        v = float(raw)
    else:
        s = str(raw).strip().replace(",", "").lstrip("$").strip()
        if not s:
            return None
        try:
            v = float(s)
        except ValueError:
            return None
    if not math.isfinite(v) or v < 0:
        return None
    return v


def _store_advertiser(eng: Engine, data: Dict[str, Any], snapshot_date: date) -> Optional[Tuple[int, float, date]]:
    """Advertiser, snapshot and EPC observation of one record, committed together."""
    with eng.begin() as conn:
        entity_id = upsert_advertiser(conn, data)
        epc = parse_epc(data.get("30_epc"))
        rate = parse_epc(data.get("30_rate"))
        upsert_snapshot(conn, entity_id, snapshot_date, data, epc, rate)
        if epc is None:
            return None
        upsert_observations([(entity_id, snapshot_date, epc)], conn=conn)
        return entity_id, epc, snapshot_date


def _store_page(eng: Engine, page: AdvertiserPage, snapshot_date: date, result: IngestResult):
    ok = errors = 0
    for data in page.advertisers:
        result.total += 1
        adv_id = str(data.get("adv_id") or "").strip()
        if not adv_id:
            logger.warning("skipping advertiser without adv_id: %r", data.get("adv_name"))
            errors += 1
            continue

        try:
            observation = _store_advertiser(eng, data, snapshot_date)
        except OperationalError:
            # connection level, not a bad record
            raise
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.warning("advertiser %s not stored: %s", adv_id, e)
            errors += 1
            continue

        if observation is not None:
            result.observations.append(observation)
        ok += 1

    result.success_count += ok
    result.error_count += errors
    logger.info("page %d stored: %d ok, %d errors", page.page, ok, errors)


def _finish(eng: Engine, result: IngestResult, start_time: datetime, status: str, error_message: Optional[str] = None):
    end_time = datetime.now(timezone.utc)
    result.duration_seconds = int((end_time - start_time).total_seconds())
    finish_crawl_log(
        result.crawl_log_id, engine=eng,
        end_time=end_time,
        duration_seconds=result.duration_seconds,
        total_advertisers=result.total,
        success_count=result.success_count,
        error_count=result.error_count,
        status=status,
        error_message=error_message,
    )


def ingest_pages(
    pages: Iterable[AdvertiserPage],
    snapshot_date: date,
    *,
    engine: Optional[Engine] = None,
    run_trends: bool = True,
    **trend_kwargs: Any,
) -> IngestResult:
    """
    Store advertiser listings page by page as they arrive, then refresh the
    trend records of every entity that received an EPC observation.

    - every record is its own transaction; a bad record is counted and skipped
    - a page that could not be fetched (`page.error`) counts as one error
    - trends run after all pages are stored, so a failed trend update never
      touches snapshot data
    - anything else raised while storing marks the crawl log ERROR and propagates
    """
    eng = get_engine(engine)
    start_time = datetime.now(timezone.utc)
    result = IngestResult(crawl_log_id=create_crawl_log(snapshot_date, start_time, "RUNNING", engine=eng))

    try:
        for page in pages:
            if page.error:
                logger.error("page %d skipped: %s", page.page, page.error)
                result.error_count += 1
                result.failed_pages.append(page.page)
                continue
            _store_page(eng, page, snapshot_date, result)
    except Exception as e:
        logger.error("ingestion for %s failed: %s", snapshot_date, e)
        _finish(eng, result, start_time, "ERROR", str(e) or e.__class__.__name__)
        raise

    _finish(eng, result, start_time, "SUCCESS")

    if run_trends and result.observations:
        result.trends = run_trend_batch(result.observations, engine=eng, **trend_kwargs)

    return result


def ingest_advertisers(
    advertisers: Iterable[Dict[str, Any]],
    snapshot_date: date,
    *,
    engine: Optional[Engine] = None,
    run_trends: bool = True,
    **trend_kwargs: Any,
) -> IngestResult:
    """Store one already-fetched list of advertiser listings (a single page)."""
    advertisers = list(advertisers)
    page = AdvertiserPage(page=1, total=len(advertisers), advertisers=advertisers)
    return ingest_pages([page], snapshot_date, engine=engine, run_trends=run_trends, **trend_kwargs)
