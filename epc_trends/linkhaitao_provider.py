from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
import hashlib
import logging
import math
import random
import time

import requests
import yaml

from epc_trends.errors import ProviderError

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0200"
RETRY_STATUS = {429, 500, 502, 503, 504}

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                  "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
    "Accept": "application/json",
    "Referer": "https://www.linkhaitao.com/",
    "Origin": "https://www.linkhaitao.com",
}


@dataclass
class AdvertiserPage:
    page: int
    total: int
    advertisers: List[Dict[str, Any]]
    error: Optional[str] = None  # set when the page could not be fetched


def load_crawl_config(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def sign(params: Dict[str, Any], salt: str) -> str:
    """MD5 over the non-empty parameter values in order, salt last."""
    values = [str(v) for v in params.values() if v is not None and str(v) != ""]
    if salt:
        values.append(salt)
    return hashlib.md5("".join(values).encode("utf-8")).hexdigest()


class _Retryable(Exception):
    pass


class LinkHaitaoProvider:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        salt: str = "",
        query: Optional[Dict[str, Any]] = None,
        retries: int = 4,
        base_sleep: float = 2.0,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url
        self.token = token
        self.salt = salt
        self.query = dict(query or {})
        self.query.setdefault("page", 1)
        self.page_size = int(self.query.get("page_size") or 100)
        self.retries = retries
        self.base_sleep = base_sleep
        self.timeout = timeout
        self.session = session or requests.Session()

    def _sleep_jitter(self, seconds: float):
        time.sleep(seconds + random.uniform(0, seconds / 2))

    def build_params(self, page: int) -> List[tuple]:
        query = dict(self.query)
        query["page"] = page
        signature = sign(query, self.salt)
        return [("c", "programs"), ("a", "list"), ("sign", signature)] + [
            (k, "" if v is None else v) for k, v in query.items()
        ]

    def _get(self, page: int) -> Dict[str, Any]:
        headers = dict(DEFAULT_HEADERS)
        if self.token:
            headers["lh-authorization"] = self.token
        try:
            r = self.session.get(self.base_url, params=self.build_params(page),
                                 headers=headers, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise _Retryable(str(e)) from e

        if r.status_code in RETRY_STATUS:
            raise _Retryable(f"HTTP {r.status_code}")
        r.raise_for_status()
        try:
            return r.json()
        except ValueError as e:
            raise ProviderError(f"page {page}: response is not JSON") from e

    def fetch_page(self, page: int) -> AdvertiserPage:
        attempt = 0
        while True:
            try:
                data = self._get(page)
                break
            except _Retryable as e:
                attempt += 1
                if attempt > self.retries:
                    raise ProviderError(f"page {page}: giving up after {self.retries} retries ({e})") from e
                # exponential backoff: base, 2*base, 4*base...
                wait = (2 ** (attempt - 1)) * self.base_sleep
                logger.warning("page %d: %s, retry %d/%d in %.1fs", page, e, attempt, self.retries, wait)
                self._sleep_jitter(wait)

        code = str(data.get("code", ""))
        if code != SUCCESS_CODE:
            raise ProviderError(f"page {page}: API error {code}: {data.get('msg', '')}")

        payload = data.get("payload") or {}
        try:
            total = int(payload.get("total") or 0)
        except (TypeError, ValueError) as e:
            raise ProviderError(f"page {page}: bad total {payload.get('total')!r}") from e

        return AdvertiserPage(page=page, total=total, advertisers=list(payload.get("list") or []))

    def iter_pages(self, start_page: int = 1, skip_failed: bool = False) -> Iterator[AdvertiserPage]:
        """
        Yield pages from `start_page` until `total` is covered or a page is empty.

        With `skip_failed`, a page that still fails after retries is yielded
        as an empty page carrying `error` and the walk goes on. The first page
        fetched is never skipped: without it the page count is unknown.
        """
        page = start_page
        total_pages: Optional[int] = None
        while True:
            try:
                result = self.fetch_page(page)
            except (ProviderError, requests.RequestException) as e:
                if not skip_failed or total_pages is None:
                    raise
                logger.error("page %d failed, skipping: %s", page, e)
                yield AdvertiserPage(page=page, total=0, advertisers=[], error=str(e))
            else:
                if not result.advertisers:
                    return
                yield result
                total_pages = math.ceil(result.total / self.page_size) if result.total else page

            if page >= total_pages:
                return
            page += 1
            self._sleep_jitter(self.base_sleep / 2)

    def fetch_all(self, start_page: int = 1) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for p in self.iter_pages(start_page):
            logger.info("page %d: %d advertisers (total %d)", p.page, len(p.advertisers), p.total)
            out.extend(p.advertisers)
        return out
