"""
Tests for the affiliate API client (request signing, retries, pagination)
"""

import hashlib
from pathlib import Path

import pytest
import requests

import epc_trends
from epc_trends.errors import ProviderError
from epc_trends.linkhaitao_provider import LinkHaitaoProvider, load_crawl_config, sign


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def ok(advertisers, total):
    return FakeResponse(200, {"code": "0200", "msg": "ok", "payload": {"total": str(total), "list": advertisers}})


def provider(responses, **kw):
    kw.setdefault("base_sleep", 0)
    kw.setdefault("retries", 2)
    query = kw.pop("query", {"channel": "14681", "join_status": "adopt", "adv_type": "", "page": 1, "page_size": 2})
    return LinkHaitaoProvider("https://api.example.test/api2.php", token="tok", salt="s4lt",
                              query=query, session=FakeSession(responses), **kw)


def test_sign_skips_empty_values_and_appends_salt():
    params = {"channel": "14681", "adv_type": "", "page": 3, "page_size": 100}

    expected = hashlib.md5("146813100s4lt".encode("utf-8")).hexdigest()
    assert sign(params, "s4lt") == expected


def test_request_params_carry_signature_but_not_salt():
    p = provider([])
    params = dict(p.build_params(5))

    assert params["c"] == "programs"
    assert params["a"] == "list"
    assert params["page"] == 5
    assert params["adv_type"] == ""
    assert params["sign"] == sign({"channel": "14681", "join_status": "adopt", "adv_type": "",
                                   "page": 5, "page_size": 2}, "s4lt")
    assert "s4lt" not in [str(v) for v in params.values()]


def test_fetch_page_sends_token_header():
    p = provider([ok([{"adv_id": "1"}], 1)])

    page = p.fetch_page(1)

    assert page.total == 1
    assert page.advertisers == [{"adv_id": "1"}]
    assert p.session.calls[0]["headers"]["lh-authorization"] == "tok"


def test_api_error_code_raises():
    p = provider([FakeResponse(200, {"code": "0401", "msg": "bad sign", "payload": {}})])

    with pytest.raises(ProviderError, match="bad sign"):
        p.fetch_page(1)


def test_non_json_response_raises():
    with pytest.raises(ProviderError):
        provider([FakeResponse(200, None)]).fetch_page(1)


def test_rate_limit_is_retried():
    p = provider([FakeResponse(429), requests.ConnectionError("reset"), ok([{"adv_id": "1"}], 1)])

    assert p.fetch_page(1).advertisers == [{"adv_id": "1"}]
    assert len(p.session.calls) == 3


def test_retries_are_bounded():
    p = provider([FakeResponse(503), FakeResponse(503)], retries=1)

    with pytest.raises(ProviderError, match="giving up"):
        p.fetch_page(1)
    assert len(p.session.calls) == 2


def test_client_errors_are_not_retried():
    p = provider([FakeResponse(403)])

    with pytest.raises(requests.HTTPError):
        p.fetch_page(1)
    assert len(p.session.calls) == 1


def test_fetch_all_walks_every_page():
    p = provider([
        ok([{"adv_id": "1"}, {"adv_id": "2"}], 3),
        ok([{"adv_id": "3"}], 3),
    ])

    advertisers = p.fetch_all()

    assert [a["adv_id"] for a in advertisers] == ["1", "2", "3"]
    assert dict(p.session.calls[1]["params"])["page"] == 2


def test_fetch_all_resumes_from_start_page():
    p = provider([ok([{"adv_id": "3"}], 3)])

    assert [a["adv_id"] for a in p.fetch_all(start_page=2)] == ["3"]
    assert dict(p.session.calls[0]["params"])["page"] == 2


def test_empty_page_stops_pagination():
    p = provider([ok([], 10)])

    assert p.fetch_all() == []
    assert len(p.session.calls) == 1


def test_packaged_crawl_config_keeps_parameter_order():
    cfg = load_crawl_config(str(Path(epc_trends.__file__).parent / "crawl.yaml"))
    keys = list(cfg["query"])

    assert keys[0] == "channel"
    assert keys.index("page") < keys.index("page_size")
    assert cfg["query"]["page_size"] == 100


def test_failed_page_is_skipped_when_asked():
    p = provider([
        ok([{"adv_id": "1"}, {"adv_id": "2"}], 6),
        FakeResponse(503), FakeResponse(503),
        ok([{"adv_id": "5"}, {"adv_id": "6"}], 6),
    ], retries=1)

    pages = list(p.iter_pages(skip_failed=True))

    assert [pg.page for pg in pages] == [1, 2, 3]
    assert pages[1].advertisers == []
    assert "giving up" in pages[1].error
    assert pages[0].error is None and pages[2].error is None
    assert [a["adv_id"] for a in pages[2].advertisers] == ["5", "6"]


def test_failed_page_propagates_by_default():
    p = provider([ok([{"adv_id": "1"}, {"adv_id": "2"}], 6), FakeResponse(503), FakeResponse(503)], retries=1)

    with pytest.raises(ProviderError):
        p.fetch_all()


def test_first_page_failure_is_never_skipped():
    p = provider([FakeResponse(403)])

    with pytest.raises(requests.HTTPError):
        list(p.iter_pages(skip_failed=True))
