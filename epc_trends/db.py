from __future__ import annotations
from typing import Optional
from sqlalchemy import (
    BigInteger, Column, Date, DateTime, Float, Integer, MetaData, Numeric,
    PrimaryKeyConstraint, Table, Text, create_engine, func,
)
from sqlalchemy.engine import Engine
from epc_trends.config import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)

metadata = MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY
_Id = BigInteger().with_variant(Integer, "sqlite")

advertisers = Table(
    "advertisers", metadata,
    Column("id", _Id, primary_key=True, autoincrement=True),
    Column("adv_id", Text, nullable=False, unique=True),
    Column("adv_name", Text, nullable=False),
    Column("m_id", Text),
    Column("adv_category", Text),
    Column("adv_type", Text),
    Column("mailing_region", Text),
    Column("approval_type", Text),
    Column("approval_type_text", Text),
    Column("adv_logo", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
)

advertiser_snapshots = Table(
    "advertiser_snapshots", metadata,
    Column("advertiser_id", _Id, nullable=False),
    Column("snapshot_date", Date, nullable=False),
    Column("monthly_visits", Text),
    Column("rd", Text),
    Column("epc_30", Numeric(12, 4)),
    Column("rate_30", Numeric(12, 4)),
    Column("aff_ba", Text),
    Column("aff_ba_unit", Text),
    Column("aff_ba_text", Text),
    Column("join_status", Text),
    Column("join_status_text", Text),
    PrimaryKeyConstraint("advertiser_id", "snapshot_date"),
)

# one EPC observation per (entity, day)
daily_epc = Table(
    "daily_epc", metadata,
    Column("entity_id", _Id, nullable=False),
    Column("date", Date, nullable=False),
    Column("epc_value", Float, nullable=False),
    Column("collected_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    PrimaryKeyConstraint("entity_id", "date"),
)

# one row per (entity, window size); the set of rows for an entity is the trend record
entity_trends = Table(
    "entity_trends", metadata,
    Column("entity_id", _Id, nullable=False),
    Column("window_days", Integer, nullable=False),
    Column("avg_epc", Float, nullable=False),
    Column("slope", Float, nullable=False),
    Column("category", Text, nullable=False),
    Column("last_calculated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("entity_id", "window_days"),
)

crawl_logs = Table(
    "crawl_logs", metadata,
    Column("id", _Id, primary_key=True, autoincrement=True),
    Column("crawl_date", Date, nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True)),
    Column("duration_seconds", Integer),
    Column("total_advertisers", Integer, nullable=False, server_default="0"),
    Column("success_count", Integer, nullable=False, server_default="0"),
    Column("error_count", Integer, nullable=False, server_default="0"),
    Column("status", Text, nullable=False),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
)


def get_engine(override: Optional[Engine] = None) -> Engine:
    return override if override is not None else engine


def init_schema(engine: Optional[Engine] = None):
    metadata.create_all(get_engine(engine))
