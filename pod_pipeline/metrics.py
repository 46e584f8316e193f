from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Optional, Protocol

# USD per accepted call, keyed by provider then "model" or "model:operation".
COST_RATES: dict[str, dict[str, float]] = {
    "openai": {
        "gpt-image-1": 0.04,
        "dall-e-3": 0.04,
        "dall-e-2": 0.02,
        "gpt-image-1:edit": 0.04,
        "dall-e-2:edit": 0.02,
        "gpt-4o-mini:chat": 0.00015,
        "gpt-4o-mini:vision": 0.00015,
    },
    "kie": {"image": 0.03},
    "printful": {"mockup": 0.0},
}

_MAX_CALLS = 10_000


class UsageRecorder(Protocol):
    def record_call(self, provider: str, model: str, operation: str) -> None: ...


class NullUsageRecorder:
    def record_call(self, provider: str, model: str, operation: str) -> None:
        return None


def estimate_cost(provider: str, model: str, operation: str) -> float:
    rates = COST_RATES.get(provider) or {}
    for key in (f"{model}:{operation}", model, operation):
        if key in rates:
            return rates[key]
    return 0.0


@dataclass
class UsageRecord:
    provider: str
    model: str
    operation: str
    cost: float
    timestamp: datetime


@dataclass
class ApiUsageTracker:
    """In-memory call log with cost estimates; inject it wherever calls should be counted."""

    max_calls: int = _MAX_CALLS
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    _calls: Deque[UsageRecord] = field(init=False)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        self._calls = deque(maxlen=self.max_calls)

    def record_call(self, provider: str, model: str, operation: str) -> None:
        record = UsageRecord(
            provider=provider,
            model=model,
            operation=operation,
            cost=estimate_cost(provider, model, operation),
            timestamp=self.clock(),
        )
        with self._lock:
            self._calls.append(record)

    def calls(self, since: Optional[datetime] = None) -> list[UsageRecord]:
        with self._lock:
            records = list(self._calls)
        if since is None:
            return records
        return [record for record in records if record.timestamp >= since]

    def cost_summary(self) -> dict:
        now = self.clock()
        records = self.calls()
        last_24h = [r for r in records if r.timestamp >= now - timedelta(hours=24)]
        last_7d = [r for r in records if r.timestamp >= now - timedelta(days=7)]

        by_provider: dict[str, dict[str, float]] = {}
        breakdown: dict[str, dict[str, float]] = {}
        for record in records:
            provider_totals = by_provider.setdefault(record.provider, {"calls": 0, "cost": 0.0})
            provider_totals["calls"] += 1
            provider_totals["cost"] += record.cost
            key = f"{record.provider}/{record.model}/{record.operation}"
            entry = breakdown.setdefault(key, {"calls": 0, "cost": 0.0})
            entry["calls"] += 1
            entry["cost"] += record.cost

        return {
            "totalCalls": len(records),
            "totalCost": round(sum(r.cost for r in records), 5),
            "last24h": {"calls": len(last_24h), "cost": round(sum(r.cost for r in last_24h), 5)},
            "last7d": {"calls": len(last_7d), "cost": round(sum(r.cost for r in last_7d), 5)},
            "byProvider": {
                name: {"calls": int(v["calls"]), "cost": round(v["cost"], 5)} for name, v in by_provider.items()
            },
            "breakdown": {
                name: {"calls": int(v["calls"]), "cost": round(v["cost"], 5)} for name, v in breakdown.items()
            },
        }
