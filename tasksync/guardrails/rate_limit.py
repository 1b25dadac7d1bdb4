import threading
import time
from collections import deque
from typing import Deque, Dict, Tuple

from fastapi import HTTPException
from starlette.requests import Request


class SimpleRateLimiter:
    """Sliding-window limit on run-triggering calls, counted per (client IP, path) in this process. Both /process routes share one budget per caller because each spends the same completion and embedding calls.
    Why available: Keeps one client from exhausting the model quota that scheduled and manual runs share."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(request: Request) -> Tuple[str, str]:
        ip = request.client.host if request.client else "unknown"
        # /process and /process/upload draw from the same budget
        route = "/process" if request.url.path.startswith("/process") else request.url.path
        return ip, route

    def check(self, request: Request) -> None:
        """Record the call, or raise 429 with a Retry-After header when the caller already used its budget for the window."""
        now = time.monotonic()
        key = self._key(request)
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.max_requests:
                retry_after = max(1, int(self.window_seconds - (now - hits[0])))
                raise HTTPException(
                    status_code=429,
                    detail="Rate limit exceeded. Please retry later.",
                    headers={"Retry-After": str(retry_after)},
                )
            hits.append(now)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
