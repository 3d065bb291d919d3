from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine

from epc_trends import db
from epc_trends.db import init_schema
from epc_trends.storage import upsert_advertiser, upsert_observations

AS_OF = date(2026, 10, 17)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database with the schema created"""
    eng = create_engine(f"sqlite:///{tmp_path / 'epc.db'}")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def default_engine(engine, monkeypatch):
    """Route code that uses the module-level engine (CLI) to the test database"""
    monkeypatch.setattr(db, "engine", engine)
    return engine


@pytest.fixture
def add_advertiser(engine):
    def _add(adv_id, name=None):
        with engine.begin() as conn:
            return upsert_advertiser(conn, {"adv_id": adv_id, "adv_name": name or f"Advertiser {adv_id}"})

    return _add


@pytest.fixture
def seed_series(engine):
    """Write `values` (oldest first) as daily observations ending at `as_of`; None leaves a gap"""
    def _seed(entity_id, values, as_of=AS_OF):
        start = as_of - timedelta(days=len(values) - 1)
        rows = [
            (entity_id, start + timedelta(days=i), v)
            for i, v in enumerate(values)
            if v is not None
        ]
        upsert_observations(rows, engine=engine)

    return _seed
