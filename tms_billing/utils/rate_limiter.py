import os
import threading
import time
from collections import defaultdict, deque

from fastapi import HTTPException, Request


def _trusted_proxy_ips() -> set[str]:
    if os.getenv("TRUST_PROXY_HEADERS", "false").strip().lower() not in {"1", "true", "yes", "on"}:
        return set()
    return {ip.strip() for ip in os.getenv("TRUSTED_PROXY_IPS", "").split(",") if ip.strip()}


class SlidingWindowRateLimiter:
    """
    In-process limiter over a sliding window of request timestamps.
    Every worker keeps its own counters.
    """

    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def retry_after(self, key: str, limit: int, window_seconds: int) -> int:
        """Record a hit for `key`; returns 0 when allowed, else seconds until a slot frees up."""
        now = time.monotonic()
        with self._lock:
            hits = self._hits[key]
            while hits and now - hits[0] >= window_seconds:
                hits.popleft()
            if len(hits) < limit:
                hits.append(now)
                return 0
            return max(1, int(window_seconds - (now - hits[0])))

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


rate_limiter = SlidingWindowRateLimiter()


def extract_client_ip(request: Request) -> str:
    peer = request.client.host if request.client and request.client.host else ""
    if peer and peer in _trusted_proxy_ips():
        forwarded = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or ""
        if forwarded.strip():
            return forwarded.split(",")[0].strip()
    return peer or "unknown"


def enforce_rate_limit(
    request: Request,
    scope: str,
    limit: int,
    window_seconds: int,
    extra_key: str | None = None,
) -> None:
    key = ":".join(part for part in (scope, extract_client_ip(request), extra_key) if part)
    retry_after = rate_limiter.retry_after(key, limit, window_seconds)
    if retry_after:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
