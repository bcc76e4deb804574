"""
Sliding-window rate limiter

Process-local: every worker process keeps its own buckets. A deployment with
several instances needs a shared store (e.g. a key-value cache with TTL)
behind the same interface.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Entries idle for longer than the widest window are dropped by the sweeper
MAX_WINDOW_SECONDS = 3600
SWEEP_INTERVAL_SECONDS = 60

ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int
    block_duration_seconds: Optional[int] = None


@dataclass
class RateLimitResult:
    success: bool
    remaining: int
    reset_in: int
    blocked: bool


@dataclass
class RateLimitEntry:
    timestamps: List[float] = field(default_factory=list)
    blocked_until: Optional[float] = None


RATE_LIMIT_PRESETS: Dict[str, RateLimitPolicy] = {
    "form": RateLimitPolicy(limit=5, window_seconds=60),
    "api": RateLimitPolicy(limit=30, window_seconds=60),
    "auth": RateLimitPolicy(limit=5, window_seconds=300, block_duration_seconds=900),
    "order": RateLimitPolicy(limit=3, window_seconds=60),
    "notification": RateLimitPolicy(limit=10, window_seconds=3600),
    "admin": RateLimitPolicy(limit=20, window_seconds=60),
    "strict": RateLimitPolicy(limit=3, window_seconds=300, block_duration_seconds=1800),
}


def _policy_key(identifier: str, policy: RateLimitPolicy) -> str:
    return f"{identifier}:{policy.limit}:{policy.window_seconds}"


class InMemoryRateLimitStore:
    def __init__(self, clock: Callable[[], float] = time.time, autosweep: bool = True):
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._autosweep = autosweep
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def __len__(self) -> int:
        return len(self._entries)

    def check(self, identifier: str, policy: RateLimitPolicy) -> RateLimitResult:
        """Record a hit for `identifier` under `policy` unless it is over the limit."""
        self._start_sweeper()
        now = self._clock()
        key = _policy_key(identifier, policy)

        with self._lock:
            entry = self._entries.setdefault(key, RateLimitEntry())

            if entry.blocked_until is not None:
                if entry.blocked_until > now:
                    return RateLimitResult(
                        success=False,
                        remaining=0,
                        reset_in=math.ceil(entry.blocked_until - now),
                        blocked=True,
                    )
                entry.blocked_until = None

            window_start = now - policy.window_seconds
            entry.timestamps = [t for t in entry.timestamps if t > window_start]

            if len(entry.timestamps) >= policy.limit:
                if policy.block_duration_seconds:
                    entry.blocked_until = now + policy.block_duration_seconds
                    return RateLimitResult(
                        success=False,
                        remaining=0,
                        reset_in=policy.block_duration_seconds,
                        blocked=True,
                    )
                oldest = min(entry.timestamps)
                return RateLimitResult(
                    success=False,
                    remaining=0,
                    reset_in=math.ceil(oldest + policy.window_seconds - now),
                    blocked=False,
                )

            entry.timestamps.append(now)
            oldest = entry.timestamps[0]
            return RateLimitResult(
                success=True,
                remaining=policy.limit - len(entry.timestamps),
                reset_in=math.ceil(oldest + policy.window_seconds - now),
                blocked=False,
            )

    def status(self, identifier: str, policy: RateLimitPolicy) -> Dict[str, object]:
        """Current usage without recording a hit."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(_policy_key(identifier, policy))
            if entry is None:
                return {"count": 0, "remaining": policy.limit, "blocked": False}
            if entry.blocked_until is not None and entry.blocked_until > now:
                return {"count": policy.limit, "remaining": 0, "blocked": True}
            window_start = now - policy.window_seconds
            count = len([t for t in entry.timestamps if t > window_start])
        return {"count": count, "remaining": max(0, policy.limit - count), "blocked": False}

    def reset(self, identifier: str) -> int:
        """Drop every policy bucket held by `identifier`."""
        prefix = f"{identifier}:"
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._entries):
                entry = self._entries[key]
                recent = [t for t in entry.timestamps if now - t < MAX_WINDOW_SECONDS]
                still_blocked = entry.blocked_until is not None and entry.blocked_until >= now
                if not recent and not still_blocked:
                    del self._entries[key]
                    removed += 1
                else:
                    entry.timestamps = recent
        if removed:
            logger.debug("Rate limit sweep removed %d idle entries", removed)
        return removed

    def stop(self) -> None:
        self._stop.set()

    def _start_sweeper(self) -> None:
        if not self._autosweep or self._sweeper is not None:
            return
        with self._lock:
            if self._sweeper is not None:
                return
            self._sweeper = threading.Thread(target=self._sweep_forever, name="rate-limit-sweeper", daemon=True)
            self._sweeper.start()

    def _sweep_forever(self) -> None:
        while not self._stop.wait(SWEEP_INTERVAL_SECONDS):
            self.sweep()


store = InMemoryRateLimitStore()


def check_rate_limit(identifier: str, policy: RateLimitPolicy) -> RateLimitResult:
    return store.check(identifier, policy)


def get_rate_limit_status(identifier: str, policy: RateLimitPolicy) -> Dict[str, object]:
    return store.status(identifier, policy)


def reset_rate_limit(identifier: str) -> int:
    return store.reset(identifier)


def get_client_identifier(headers: Mapping[str, str]) -> str:
    """Best-effort client IP from proxy headers.

    Clients behind none of these headers all share the anonymous bucket.
    """
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return ANONYMOUS
