from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Optional

from epc_trends.analyzer import TrendCategory, WindowTrend


@dataclass(frozen=True)
class Observation:
    entity_id: int
    date: date
    value: float


@dataclass
class TrendRecord:
    """Per-entity trend state: one WindowTrend per window size in days."""
    entity_id: int
    windows: Dict[int, WindowTrend] = field(default_factory=dict)
    last_calculated_at: Optional[datetime] = None

    def window(self, days: int) -> WindowTrend:
        try:
            return self.windows[days]
        except KeyError:
            raise KeyError(f"no {days}-day window on trend record {self.entity_id}") from None

    def category(self, days: int) -> TrendCategory:
        return self.window(days).category

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"entity_id": self.entity_id}
        for days in sorted(self.windows):
            w = self.windows[days]
            out[f"avg_epc_{days}d"] = w.avg_epc
            out[f"slope_{days}d"] = w.slope
            out[f"category_{days}d"] = w.category.value
        out["last_calculated_at"] = (
            self.last_calculated_at.isoformat() if self.last_calculated_at else None
        )
        return out
