# coding=utf-8
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class RateLimitRecord:
    count: int
    window_start: float


class RateLimiter:
    """
    Fixed-window request limiter keyed by client identifier (usually the IP).

    Not thread-safe; all calls are expected to come from the event loop.
    """

    def __init__(
        self,
        window_sec: float = 60.0,
        max_requests: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_sec = max(0.001, float(window_sec))
        self.max_requests = max(1, int(max_requests))
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}

    def _expired(self, record: RateLimitRecord, now: float) -> bool:
        return now - record.window_start >= self.window_sec

    def is_allowed(self, client_id: str) -> bool:
        now = self._clock()
        record = self._records.get(client_id)
        if record is None or self._expired(record, now):
            self._records[client_id] = RateLimitRecord(count=1, window_start=now)
            return True
        if record.count < self.max_requests:
            record.count += 1
            return True
        return False

    def remaining(self, client_id: str) -> int:
        record = self._records.get(client_id)
        if record is None or self._expired(record, self._clock()):
            return self.max_requests
        return max(0, self.max_requests - record.count)

    get_remaining_requests = remaining

    def reset(self, client_id: str) -> None:
        self._records.pop(client_id, None)

    def cleanup(self) -> int:
        now = self._clock()
        stale = [cid for cid, record in self._records.items() if self._expired(record, now)]
        for cid in stale:
            del self._records[cid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


class ConnectionGate:
    """
    Live concurrent-connection counter per source address.
    """

    def __init__(self, max_connections: int = 5) -> None:
        self.max_connections = max(1, int(max_connections))
        self._counts: Dict[str, int] = {}

    def check_connection_allowed(self, ip: str) -> bool:
        return self._counts.get(ip, 0) < self.max_connections

    def increment(self, ip: str) -> int:
        count = self._counts.get(ip, 0) + 1
        self._counts[ip] = count
        return count

    def decrement(self, ip: str) -> int:
        count = self._counts.get(ip, 0) - 1
        if count <= 0:
            self._counts.pop(ip, None)
            return 0
        self._counts[ip] = count
        return count

    def count(self, ip: str) -> int:
        return self._counts.get(ip, 0)
