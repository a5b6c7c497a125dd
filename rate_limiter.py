from typing import Callable, Dict, Tuple
import math
import threading
import time

from config import RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW


class FixedWindowRateLimiter:
    """
    Fixed-window request counter per client IP.

    Every call to hit() counts, allowed or not. The window for an IP opens on
    its first request and closes ``window_seconds`` later.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        # {ip: (window_start, count)}
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()
        self._last_cleanup_time = clock()

    def _cleanup_expired(self, now: float) -> None:
        # Only cleanup if a full window has passed since the last one
        if now - self._last_cleanup_time < self.window_seconds:
            return
        expired = [
            ip for ip, (window_start, _) in self._windows.items()
            if now - window_start >= self.window_seconds
        ]
        for ip in expired:
            del self._windows[ip]
        self._last_cleanup_time = now

    def hit(self, client_ip: str) -> Tuple[bool, int]:
        """Count a request; return (allowed, retry_after_seconds)."""
        now = self.clock()
        with self._lock:
            self._cleanup_expired(now)
            window_start, count = self._windows.get(client_ip, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            count += 1
            self._windows[client_ip] = (window_start, count)

            if count > self.max_requests:
                retry_after = math.ceil(window_start + self.window_seconds - now)
                return False, max(retry_after, 1)
            return True, 0

    def stats(self) -> dict:
        with self._lock:
            active = len(self._windows)
        return {
            "active_windows": active,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
