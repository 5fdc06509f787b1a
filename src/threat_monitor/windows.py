# src/threat_monitor/windows.py
"""
Thread-safe keyed state for the detection rules.

Keys are hashed onto a fixed number of shards, each guarded by its own lock,
so concurrent workers only contend when they touch the same shard. Every
read-modify-write below happens under the shard lock.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set

Clock = Callable[[], float]

DEFAULT_SHARDS = 16


@dataclass
class FailureEntry:
    """Failed-attempt counter with the time of its first entry."""
    count: int
    first_seen: float


class _Sharded:
    def __init__(self, shards: int = DEFAULT_SHARDS, clock: Clock = time.monotonic) -> None:
        self.clock = clock
        self._locks = [threading.Lock() for _ in range(shards)]
        self._maps: List[Dict] = [{} for _ in range(shards)]
        self._last_sweep = [clock()] * shards

    def _shard(self, key: str) -> int:
        return hash(key) % len(self._locks)

    def _sweep_due(self, idx: int, now: float, interval: float) -> bool:
        """Whether shard ``idx`` was last swept ``interval`` seconds ago. Caller holds the lock."""
        if now - self._last_sweep[idx] < interval:
            return False
        self._last_sweep[idx] = now
        return True

    def __len__(self) -> int:
        total = 0
        for lock, shard in zip(self._locks, self._maps):
            with lock:
                total += len(shard)
        return total


class FailureCounterStore(_Sharded):
    """
    Counters of failed attempts per key.

    A counter lives for ``ttl`` seconds from its first entry and is then
    discarded, whatever its count. Other expired counters in a shard are
    swept at most once per ``ttl``.

    Example:
        >>> store = FailureCounterStore(ttl=300)
        >>> store.increment("10.0.0.1:alice")
        1
    """

    def __init__(self, ttl: float, shards: int = DEFAULT_SHARDS,
                 clock: Clock = time.monotonic) -> None:
        super().__init__(shards, clock)
        self.ttl = ttl

    def _expired(self, entry: FailureEntry, now: float) -> bool:
        return now - entry.first_seen >= self.ttl

    def _live_entry(self, idx: int, key: str, now: float) -> Optional[FailureEntry]:
        shard = self._maps[idx]
        if self._sweep_due(idx, now, self.ttl):
            for other in [k for k, entry in shard.items() if self._expired(entry, now)]:
                del shard[other]
        entry = shard.get(key)
        if entry is not None and self._expired(entry, now):
            del shard[key]
            return None
        return entry

    def increment(self, key: str) -> int:
        """Atomically add one failure and return the new count."""
        now = self.clock()
        idx = self._shard(key)
        with self._locks[idx]:
            entry = self._live_entry(idx, key, now)
            if entry is None:
                entry = self._maps[idx][key] = FailureEntry(0, now)
            entry.count += 1
            return entry.count

    def get(self, key: str) -> int:
        now = self.clock()
        idx = self._shard(key)
        with self._locks[idx]:
            entry = self._live_entry(idx, key, now)
            return entry.count if entry else 0


class SlidingWindowStore(_Sharded):
    """
    Per-key timestamp windows.

    ``record`` appends the current time, prunes entries older than the
    window and returns the remaining count in one atomic step. Keys whose
    window has emptied out are swept at most once per window.
    """

    def __init__(self, window: float, shards: int = DEFAULT_SHARDS,
                 clock: Clock = time.monotonic) -> None:
        super().__init__(shards, clock)
        self.window = window

    def _prune(self, stamps: Deque[float], now: float) -> None:
        while stamps and now - stamps[0] >= self.window:
            stamps.popleft()

    def record(self, key: str) -> int:
        now = self.clock()
        idx = self._shard(key)
        with self._locks[idx]:
            shard = self._maps[idx]
            if self._sweep_due(idx, now, self.window):
                for other in [k for k in shard if k != key]:
                    self._prune(shard[other], now)
                    if not shard[other]:
                        del shard[other]
            stamps = shard.get(key)
            if stamps is None:
                stamps = shard[key] = deque()
            stamps.append(now)
            self._prune(stamps, now)
            return len(stamps)

    def count(self, key: str) -> int:
        now = self.clock()
        idx = self._shard(key)
        with self._locks[idx]:
            stamps = self._maps[idx].get(key)
            if not stamps:
                return 0
            self._prune(stamps, now)
            return len(stamps)


class SuspiciousIPSet:
    """Append-only set of addresses flagged by the detectors."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ips: Set[str] = set()

    def add(self, ip: str) -> None:
        with self._lock:
            self._ips.add(ip)

    def __contains__(self, ip: str) -> bool:
        with self._lock:
            return ip in self._ips

    def __len__(self) -> int:
        with self._lock:
            return len(self._ips)

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._ips)
