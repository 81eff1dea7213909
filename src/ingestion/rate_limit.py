"""In-process, per-user sliding-window quota governor.

Tracks every request made to a provider on behalf of a user and refuses new
ones once any configured window is full.  This is not a distributed rate
limiter: state lives in one process and is lost on restart, so the windows
in sync_config.yaml sit below the provider's published limits.

Usage::

    store = UsageStore(max_users=config.quota_max_users)
    governor = RateLimitGovernor(strava_cfg.quota_windows, store)

    decision = governor.check_quota(user_id)
    if not decision.allowed:
        ...  # pause until decision.reset_at
    governor.record_request(user_id, "activities")
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Hashable, Sequence

from src.ingestion.config_loader import QuotaWindow

logger = logging.getLogger("waypoint.ingestion.rate_limit")


@dataclass(frozen=True)
class QuotaDecision:
    """Result of a quota check.

    Attributes:
        allowed:    True if a request may be sent now.
        limit_type: Name of the first exhausted window (shortest first).
        reset_at:   UTC datetime when that window frees a slot.
    """

    allowed: bool
    limit_type: str | None = None
    reset_at: datetime | None = None


@dataclass(frozen=True)
class UsageEntry:
    timestamp: float
    endpoint_class: str


class UsageStore:
    """Bounded map of user → request log with least-recently-used eviction.

    Constructed once per process and handed to every governor that needs
    it.  When more than ``max_users`` users are tracked, the user touched
    longest ago is dropped.  All access goes through ``lock``.
    """

    def __init__(self, max_users: int = 10000) -> None:
        if max_users <= 0:
            raise ValueError("max_users must be positive")
        self._max_users = max_users
        self._logs: OrderedDict[Hashable, deque[UsageEntry]] = OrderedDict()
        self.lock = threading.RLock()

    @property
    def max_users(self) -> int:
        return self._max_users

    def log_for(self, user_id: Hashable) -> deque[UsageEntry]:
        """Return the user's log, creating it and marking it most recently used."""
        with self.lock:
            log = self._logs.get(user_id)
            if log is None:
                log = deque()
                self._logs[user_id] = log
                self._evict()
            else:
                self._logs.move_to_end(user_id)
            return log

    def peek(self, user_id: Hashable) -> deque[UsageEntry] | None:
        """Return the user's log without creating it or touching recency."""
        with self.lock:
            return self._logs.get(user_id)

    def _evict(self) -> None:
        while len(self._logs) > self._max_users:
            evicted, _ = self._logs.popitem(last=False)
            logger.debug("Quota store full, evicted least-recently-used user %s", evicted)

    def __contains__(self, user_id: object) -> bool:
        with self.lock:
            return user_id in self._logs

    def __len__(self) -> int:
        with self.lock:
            return len(self._logs)


class RateLimitGovernor:
    """Gate outbound provider calls against time-windowed quotas.

    A request may proceed only if, for every window, the number of recorded
    requests inside it is below the window's limit.
    """

    def __init__(
        self,
        windows: Sequence[QuotaWindow],
        store: UsageStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the governor.

        Args:
            windows: Quota tiers; evaluated shortest window first.
            store:   Shared per-process usage store.
            clock:   Wall-clock source in unix seconds (injectable for tests).
        """
        if not windows:
            raise ValueError("At least one quota window is required")
        self._windows = sorted(windows, key=lambda w: w.window_ms)
        self._max_window_s = self._windows[-1].window_seconds
        self._store = store
        self._clock = clock

    @property
    def windows(self) -> list[QuotaWindow]:
        return list(self._windows)

    def check_quota(self, user_id: Hashable) -> QuotaDecision:
        """Evaluate every window for ``user_id``.

        Prunes entries older than the largest window as a side effect.

        Returns:
            QuotaDecision; when denied, ``limit_type`` and ``reset_at`` name
            the shortest exhausted window.
        """
        now = self._clock()
        with self._store.lock:
            log = self._store.peek(user_id)
            if not log:
                return QuotaDecision(allowed=True)
            self._prune(log, now)

            for window in self._windows:
                cutoff = now - window.window_seconds
                in_window = [e.timestamp for e in log if e.timestamp > cutoff]
                if len(in_window) >= window.limit:
                    reset_ts = in_window[0] + window.window_seconds
                    reset_at = datetime.fromtimestamp(reset_ts, tz=timezone.utc)
                    logger.info(
                        "Quota exhausted for user %s: %s window %d/%d, resets at %s",
                        user_id,
                        window.name,
                        len(in_window),
                        window.limit,
                        reset_at.isoformat(),
                    )
                    return QuotaDecision(
                        allowed=False, limit_type=window.name, reset_at=reset_at
                    )

        return QuotaDecision(allowed=True)

    def record_request(self, user_id: Hashable, endpoint_class: str) -> None:
        """Append a usage entry for a request that reached the provider."""
        now = self._clock()
        with self._store.lock:
            log = self._store.log_for(user_id)
            log.append(UsageEntry(timestamp=now, endpoint_class=endpoint_class))

    def usage(self, user_id: Hashable) -> dict[str, int]:
        """Return current request counts per window name (for monitoring)."""
        now = self._clock()
        with self._store.lock:
            log = self._store.peek(user_id) or deque()
            return {
                w.name: sum(1 for e in log if e.timestamp > now - w.window_seconds)
                for w in self._windows
            }

    def _prune(self, log: deque[UsageEntry], now: float) -> None:
        cutoff = now - self._max_window_s
        while log and log[0].timestamp <= cutoff:
            log.popleft()
