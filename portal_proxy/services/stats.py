"""
Stats service - per-upstream metrics and the proxy error-event channel.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List


# Maximum number of upstreams to track to prevent memory leak
MAX_UPSTREAMS = 1000

# Number of error events kept for inspection
MAX_ERROR_EVENTS = 100


@dataclass
class UpstreamStats:
    """Statistics for a single upstream."""
    request_count: int = 0
    error_count: int = 0
    relayed_bytes: int = 0
    total_response_time_ms: float = 0.0

    @property
    def error_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return (self.error_count / self.request_count) * 100

    @property
    def avg_response_time_ms(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.total_response_time_ms / self.request_count

    def to_dict(self) -> Dict:
        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "error_rate_percent": round(self.error_rate, 2),
            "relayed_bytes": self.relayed_bytes,
            "avg_response_time_ms": round(self.avg_response_time_ms, 2)
        }


@dataclass
class ProxyErrorEvent:
    """A single proxy failure: connect error, timeout or mid-stream reset."""
    upstream: str
    method: str
    path: str
    reason: str
    phase: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict:
        return asdict(self)


class StatsCollector:
    """Async-safe statistics collector for all upstreams with LRU eviction."""

    def __init__(self):
        self._stats: OrderedDict[str, UpstreamStats] = OrderedDict()
        self._errors: Deque[ProxyErrorEvent] = deque(maxlen=MAX_ERROR_EVENTS)
        self._lock = asyncio.Lock()

    def _entry(self, upstream: str) -> UpstreamStats:
        if upstream not in self._stats:
            # Evict oldest entry if at capacity
            if len(self._stats) >= MAX_UPSTREAMS:
                self._stats.popitem(last=False)
            self._stats[upstream] = UpstreamStats()
        else:
            # Move to end (most recently used)
            self._stats.move_to_end(upstream)
        return self._stats[upstream]

    async def record_request(
        self,
        upstream: str,
        response_time_ms: float,
        is_error: bool = False
    ):
        """Record a request that got (or failed to get) response headers from an upstream."""
        async with self._lock:
            stats = self._entry(upstream)
            stats.request_count += 1
            stats.total_response_time_ms += response_time_ms
            if is_error:
                stats.error_count += 1

    async def record_bytes(self, upstream: str, relayed_bytes: int):
        """Add bytes relayed back to the client once a response body is done."""
        async with self._lock:
            self._entry(upstream).relayed_bytes += relayed_bytes

    async def record_error(self, event: ProxyErrorEvent):
        """Publish an error event. Errors after headers were sent count against the upstream too."""
        async with self._lock:
            self._errors.append(event)
            if event.phase == "STREAMING":
                self._entry(event.upstream).error_count += 1

    async def recent_errors(self) -> List[Dict]:
        """Most recent error events, oldest first."""
        async with self._lock:
            return [event.to_dict() for event in self._errors]

    async def get_all_stats(self) -> Dict[str, Dict]:
        """Get statistics for all upstreams."""
        async with self._lock:
            return {upstream: stats.to_dict() for upstream, stats in self._stats.items()}
