"""
Tests for the batch driver: per-entity isolation of trend failures
"""

import logging
import threading
import time

import pytest

from epc_trends import driver
from epc_trends.driver import on_observation_persisted, run_trend_batch
from epc_trends.errors import StoreReadError
from epc_trends.storage import get_trend_record
from tests.conftest import AS_OF


@pytest.fixture
def fake_maintainer(monkeypatch):
    calls = []

    def _fake(entity_id, value, as_of, **kwargs):
        calls.append((entity_id, value, as_of, kwargs))
        if entity_id == 2:
            raise StoreReadError("store down")

    monkeypatch.setattr(driver, "process_daily_epc_trend", _fake)
    return calls


def test_hook_reports_success(fake_maintainer):
    assert on_observation_persisted(1, 0.5, AS_OF, retries=0) is True
    assert fake_maintainer == [(1, 0.5, AS_OF, {"retries": 0})]


def test_hook_swallows_and_logs_failures(fake_maintainer, caplog):
    with caplog.at_level(logging.ERROR, logger="epc_trends.driver"):
        assert on_observation_persisted(2, 0.5, AS_OF) is False

    assert "entity 2" in caplog.text


def test_batch_continues_after_failed_entity(fake_maintainer):
    items = [(1, 0.1, AS_OF), (2, 0.2, AS_OF), (3, 0.3, AS_OF)]

    result = run_trend_batch(items, max_workers=2, timeout=5)

    assert result.succeeded == 2
    assert result.failed == 1
    assert result.failed_entities == [2]
    assert sorted(c[0] for c in fake_maintainer) == [1, 2, 3]


def test_empty_batch():
    result = run_trend_batch([], max_workers=1, timeout=1)

    assert (result.succeeded, result.failed) == (0, 0)


def test_slow_entity_times_out_without_blocking_others(monkeypatch):
    release = threading.Event()

    def _fake(entity_id, value, as_of, **kwargs):
        if entity_id == 9:
            release.wait(5)

    monkeypatch.setattr(driver, "process_daily_epc_trend", _fake)
    try:
        result = run_trend_batch([(9, 0.0, AS_OF), (1, 0.0, AS_OF)], max_workers=2, timeout=0.2)
    finally:
        release.set()

    assert result.failed_entities == [9]
    assert result.succeeded == 1


def test_batch_against_database(engine, add_advertiser, seed_series):
    a = add_advertiser("A")
    b = add_advertiser("B")
    seed_series(a, [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0])
    seed_series(b, [7.0, 6.0, 5.0, 4.0, 3.0, 2.0, 1.0])

    result = run_trend_batch(
        [(a, 7.0, AS_OF), (b, 1.0, AS_OF)],
        max_workers=1, timeout=10, engine=engine, retries=0, base_sleep=0,
    )

    assert result.succeeded == 2
    assert get_trend_record(a, engine=engine).category(7).value == "UPWARD"
    assert get_trend_record(b, engine=engine).category(7).value == "DOWNWARD"


def test_queued_entity_gets_its_own_timeout(monkeypatch):
    processed = []

    def _fake(entity_id, value, as_of, **kwargs):
        if entity_id == 9:
            time.sleep(0.5)
        processed.append(entity_id)

    monkeypatch.setattr(driver, "process_daily_epc_trend", _fake)

    result = run_trend_batch([(9, 0.0, AS_OF), (1, 0.0, AS_OF)], max_workers=1, timeout=0.2)

    assert result.failed_entities == [9]
    assert result.succeeded == 1
    assert 1 in processed
