from __future__ import annotations
import argparse
import logging
from datetime import date
from typing import List, Optional

import pandas as pd

from epc_trends.analyzer import TrendCategory
from epc_trends.backfill import recalculate_all, trend_history
from epc_trends.config import settings
from epc_trends.db import init_schema
from epc_trends.driver import on_observation_persisted
from epc_trends.ingest import ingest_pages
from epc_trends.linkhaitao_provider import LinkHaitaoProvider, load_crawl_config
from epc_trends.models import TrendRecord
from epc_trends.storage import (
    count_snapshots_for_date, find_trend_records, get_crawl_logs, get_epc_history,
    get_entity_id, get_observations, get_trend_record,
)


def _parse_date(s: Optional[str]) -> date:
    return date.fromisoformat(s) if s else date.today()


def get_provider() -> LinkHaitaoProvider:
    cfg = load_crawl_config(settings.crawl_config_path)
    return LinkHaitaoProvider(
        base_url=settings.linkhaitao_base_url,
        token=settings.linkhaitao_token,
        salt=settings.linkhaitao_salt,
        query=cfg.get("query") or {},
    )


def format_record(adv_id: str, record: TrendRecord) -> str:
    lines = [f"{adv_id} (entity {record.entity_id}), calculated {record.last_calculated_at:%Y-%m-%d %H:%M}"]
    for w in sorted(record.windows):
        t = record.windows[w]
        lines.append(f"  {w:>3}d  {t.category.value:<8}  slope {t.slope:+.4f}  avg EPC {t.avg_epc:.4f}")
    return "\n".join(lines)


def cmd_crawl(args) -> int:
    snapshot_date = _parse_date(args.date)
    provider = get_provider()

    # resume after pages already stored for this date
    existing = count_snapshots_for_date(snapshot_date)
    start_page = existing // provider.page_size + 1
    if existing:
        print(f"{existing} snapshots already stored for {snapshot_date}, resuming at page {start_page}")

    pages = provider.iter_pages(start_page=start_page, skip_failed=True)
    result = ingest_pages(pages, snapshot_date, run_trends=not args.no_trends, progress=True)
    if not result.total and not result.failed_pages:
        print("No advertisers returned.")
        return 0

    print(f"Stored {result.success_count}/{result.total} advertisers for {snapshot_date} "
          f"({result.error_count} errors, {result.duration_seconds}s)")
    if result.failed_pages:
        print(f"Pages skipped after retries: {', '.join(str(p) for p in result.failed_pages)}")
    if result.trends:
        print(f"Trends updated: {result.trends.succeeded} ok / {result.trends.failed} failed")
    return 0


def cmd_recalc(args) -> int:
    entity_id = get_entity_id(args.adv_id)
    if entity_id is None:
        print(f"Advertiser {args.adv_id} not found.")
        return 1

    as_of = _parse_date(args.date)
    # the stored history is the source of truth, the value is only for the log
    today = get_observations(entity_id, as_of, as_of)
    ok = on_observation_persisted(entity_id, today[0].value if today else 0.0, as_of)
    if not ok:
        print("Trend update failed, see log.")
        return 1

    print(format_record(args.adv_id, get_trend_record(entity_id)))
    return 0


def cmd_backfill(args) -> int:
    as_of = _parse_date(args.date)
    result = recalculate_all(as_of, progress=True)
    print(f"Recalculated trends as of {as_of}: {result.succeeded} ok / {result.failed} failed")

    if args.days:
        df = trend_history(as_of, args.days)
        if df.empty:
            print("No EPC history in the window.")
            return 0
        df.to_csv(args.out, index=False, encoding="utf-8")
        print(f"Saved {len(df)} rows -> {args.out}")
        print(df.head(20).to_string(index=False))
    return 0


def cmd_show(args) -> int:
    entity_id = get_entity_id(args.adv_id)
    record = get_trend_record(entity_id) if entity_id is not None else None
    if record is None:
        print(f"No trend record for {args.adv_id}.")
        return 1
    print(format_record(args.adv_id, record))
    return 0


def cmd_find(args) -> int:
    records = find_trend_records(
        window_days=args.window,
        category=args.category,
        min_slope=args.min_slope,
        max_slope=args.max_slope,
        min_avg_epc=args.min_avg_epc,
        limit=args.limit,
    )
    if not records:
        print("No matching entities.")
        return 0
    for r in records:
        t = r.window(args.window)
        print(f"entity {r.entity_id:<8} {t.category.value:<8} slope {t.slope:+.4f}  avg EPC {t.avg_epc:.4f}")
    return 0


def cmd_history(args) -> int:
    end = _parse_date(args.date)
    history = get_epc_history(args.adv_ids, args.days, end)
    missing = [a for a in args.adv_ids if a not in history]
    if missing:
        print(f"Unknown advertisers: {', '.join(missing)}")
    if not history:
        return 1

    labels = next(iter(history.values()))["labels"]
    df = pd.DataFrame({adv_id: h["history"] for adv_id, h in history.items()}, index=labels)
    print(df.to_string(float_format=lambda v: f"{v:.4f}"))
    return 0


def cmd_logs(args) -> int:
    for log in get_crawl_logs(limit=args.limit):
        print(f"#{log['id']} {log['crawl_date']} {log['status']:<7} "
              f"{log['success_count']}/{log['total_advertisers']} ok, {log['error_count']} errors, "
              f"{log['duration_seconds'] or 0}s"
              + (f"  ({log['error_message']})" if log["error_message"] else ""))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="epc-trends", description="Advertiser EPC harvesting and trend analysis.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("crawl", help="Fetch advertiser listings for a day and store them.")
    p.add_argument("--date", help="Snapshot date YYYY-MM-DD (default: today).")
    p.add_argument("--no-trends", action="store_true", help="Skip the trend update after storing.")
    p.set_defaults(func=cmd_crawl)

    p = sub.add_parser("recalc", help="Recalculate the trend record of one advertiser.")
    p.add_argument("adv_id")
    p.add_argument("--date", help="As-of date YYYY-MM-DD (default: today).")
    p.set_defaults(func=cmd_recalc)

    p = sub.add_parser("backfill", help="Recalculate every trend record as of a date.")
    p.add_argument("--date", help="As-of date YYYY-MM-DD (default: today).")
    p.add_argument("--days", type=int, default=0, help="Also export per-day classifications for N days.")
    p.add_argument("--out", default="trend_history.csv", help="CSV path for --days.")
    p.set_defaults(func=cmd_backfill)

    p = sub.add_parser("show", help="Print the stored trend record of an advertiser.")
    p.add_argument("adv_id")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("find", help="Filter entities by trend of one window.")
    p.add_argument("--window", type=int, required=True, choices=settings.trend_windows)
    p.add_argument("--category", type=str.upper, choices=[c.value for c in TrendCategory])
    p.add_argument("--min-slope", type=float)
    p.add_argument("--max-slope", type=float)
    p.add_argument("--min-avg-epc", type=float)
    p.add_argument("--limit", type=int, default=50)
    p.set_defaults(func=cmd_find)

    p = sub.add_parser("history", help="Print the daily EPC series of one or more advertisers.")
    p.add_argument("adv_ids", nargs="+", metavar="ADV_ID")
    p.add_argument("--days", type=int, default=30)
    p.add_argument("--date", help="Last day YYYY-MM-DD (default: today).")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("logs", help="Show recent crawl logs.")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_logs)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_schema()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
