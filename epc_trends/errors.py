from __future__ import annotations


class TrendError(Exception):
    """Base class for failures of the trend engine."""


class StoreReadError(TrendError):
    """EPC history could not be read; the trend record was left untouched."""


class StoreWriteError(TrendError):
    """Trend record upsert failed after a successful read."""


class ProviderError(Exception):
    """The affiliate API returned an error code or an unusable payload."""
