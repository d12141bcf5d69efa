import os
import threading
import time
from collections import deque
from typing import Optional, Tuple

from fastapi import HTTPException, Request


def _is_truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_set(raw: str) -> set[str]:
    return {item.strip() for item in (raw or "").split(",") if item.strip()}


TRUST_PROXY_HEADERS = _is_truthy(os.getenv("TRUST_PROXY_HEADERS", "false"))
TRUSTED_PROXY_IPS = _parse_csv_set(os.getenv("TRUSTED_PROXY_IPS", ""))
RATE_LIMIT_ENABLED = _is_truthy(os.getenv("RATE_LIMIT_ENABLED", "true"))


class SlidingWindowRateLimiter:
    """
    In-process sliding-window limiter keyed by scope, client IP and optional account.
    Limits are per worker process. Keys idle for longer than the widest window seen
    are swept every ``sweep_every`` calls, so one-off clients do not accumulate.
    """

    def __init__(self, sweep_every: int = 1000) -> None:
        self._events: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls = 0
        self._widest_window = 0

    def __len__(self) -> int:
        return len(self._events)

    def allow(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        now = time.monotonic()
        cutoff = now - window_seconds

        with self._lock:
            self._widest_window = max(self._widest_window, window_seconds)
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(now)

            events = self._events.setdefault(key, deque())
            while events and events[0] <= cutoff:
                events.popleft()

            if len(events) >= limit:
                if not events:
                    # Zero limit: nothing to remember for this key.
                    del self._events[key]
                    return False, window_seconds
                return False, int(max(1, window_seconds - (now - events[0])))

            events.append(now)
            return True, 0

    def _sweep(self, now: float) -> None:
        cutoff = now - self._widest_window
        for key in [key for key, events in self._events.items() if not events or events[-1] <= cutoff]:
            del self._events[key]

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._calls = 0


rate_limiter = SlidingWindowRateLimiter()


def _should_trust_proxy_headers(request: Request) -> bool:
    if not TRUST_PROXY_HEADERS or not TRUSTED_PROXY_IPS:
        return False
    remote_host = request.client.host if request.client and request.client.host else ""
    return remote_host in TRUSTED_PROXY_IPS


def extract_client_ip(request: Request) -> str:
    if _should_trust_proxy_headers(request):
        for header in ("cf-connecting-ip", "x-forwarded-for", "x-real-ip"):
            value = request.headers.get(header)
            if value:
                return value.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def enforce_rate_limit(
    request: Request,
    scope: str,
    limit: int,
    window_seconds: int,
    extra_key: Optional[str] = None,
) -> None:
    if not RATE_LIMIT_ENABLED:
        return

    key = f"{scope}:{extract_client_ip(request)}"
    if extra_key:
        key = f"{key}:{extra_key}"

    allowed, retry_after = rate_limiter.allow(key=key, limit=limit, window_seconds=window_seconds)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
