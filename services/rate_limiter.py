from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from shared.config import get_rate_limit_settings

logger = logging.getLogger(__name__)

FAILURE_LOOKBACK_SECONDS = 60 * 60
TOP_FAILURE_ENDPOINTS = 10


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    started_at: float


class RequestRateLimiter:
    """
    Fixed-window request counter keyed by (identifier, endpoint), plus a
    rolling record of failures used to block misbehaving callers.
    """

    def __init__(
        self,
        window_seconds: int = 15 * 60,
        max_requests: int = 100,
        max_login_attempts: int = 5,
        max_failures: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.max_login_attempts = max_login_attempts
        self.max_failures = max_failures
        self._clock = clock
        self._lock = Lock()
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._failures: Dict[Tuple[str, str], List[float]] = {}
        self._last_sweep = clock()

    @classmethod
    def from_settings(cls, clock: Callable[[], float] = time.time) -> "RequestRateLimiter":
        settings = get_rate_limit_settings()
        return cls(
            window_seconds=settings["window_seconds"],
            max_requests=settings["max_requests"],
            max_login_attempts=settings["max_login_attempts"],
            max_failures=settings["max_failures"],
            clock=clock,
        )

    def limit_for(self, endpoint: str) -> int:
        lowered = str(endpoint or "").lower()
        if "login" in lowered or "auth" in lowered:
            return self.max_login_attempts
        return self.max_requests

    def check(self, identifier: str, endpoint: str) -> RateLimitDecision:
        now = self._clock()
        key = (str(identifier), str(endpoint))
        limit = self.limit_for(endpoint)
        with self._lock:
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self.window_seconds:
                window = _Window(count=0, started_at=now)
                self._windows[key] = window
            reset_at = window.started_at + self.window_seconds
            if window.count >= limit:
                logger.warning("Rate limit exceeded for %s on %s", identifier, endpoint)
                return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
            window.count += 1
            return RateLimitDecision(allowed=True, remaining=limit - window.count, reset_at=reset_at)

    def retry_after(self, decision: RateLimitDecision) -> int:
        return max(1, int(round(decision.reset_at - self._clock())))

    def record_failure(self, identifier: str, endpoint: str) -> None:
        now = self._clock()
        key = (str(identifier), str(endpoint))
        with self._lock:
            self._sweep(now)
            stamps = self._recent(self._failures.get(key, []), now)
            stamps.append(now)
            self._failures[key] = stamps

    def _recent(self, stamps: List[float], now: float) -> List[float]:
        return [stamp for stamp in stamps if now - stamp < FAILURE_LOOKBACK_SECONDS]

    def _sweep(self, now: float) -> None:
        # Caller holds the lock. Windows stay for the metrics lookback even after they reset.
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        retention = max(self.window_seconds, FAILURE_LOOKBACK_SECONDS)
        for key in [key for key, window in self._windows.items() if now - window.started_at >= retention]:
            del self._windows[key]
        for key in list(self._failures):
            recent = self._recent(self._failures[key], now)
            if recent:
                self._failures[key] = recent
            else:
                del self._failures[key]

    def should_block(self, identifier: str, max_failures: Optional[int] = None) -> bool:
        threshold = self.max_failures if max_failures is None else max_failures
        now = self._clock()
        with self._lock:
            total = sum(
                len(self._recent(stamps, now))
                for (owner, _endpoint), stamps in self._failures.items()
                if owner == str(identifier)
            )
        return total >= threshold

    def metrics(self) -> dict:
        now = self._clock()
        with self._lock:
            total_requests = 0
            active = set()
            for (owner, _endpoint), window in self._windows.items():
                if now - window.started_at < FAILURE_LOOKBACK_SECONDS:
                    total_requests += window.count
                    active.add(owner)

            total_failures = 0
            per_endpoint: Dict[str, int] = {}
            for (_owner, endpoint), stamps in self._failures.items():
                recent = len(self._recent(stamps, now))
                if not recent:
                    continue
                total_failures += recent
                per_endpoint[endpoint] = per_endpoint.get(endpoint, 0) + recent

        top = sorted(per_endpoint.items(), key=lambda item: item[1], reverse=True)[:TOP_FAILURE_ENDPOINTS]
        return {
            "totalRequests": total_requests,
            "totalFailures": total_failures,
            "activeIdentifiers": len(active),
            "topFailureEndpoints": [{"endpoint": endpoint, "failures": count} for endpoint, count in top],
        }

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._failures.clear()
