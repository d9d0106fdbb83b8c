import threading
import time
from typing import Dict, List, Optional

from .config import RateLimitOptions


class RateLimiter:
    """Sliding-window request counter keyed by client address.

    Addresses with no request left in the window are swept once per window,
    so the map only holds clients seen recently.
    """

    def __init__(self, options: Optional[RateLimitOptions] = None):
        self.options = options or RateLimitOptions()
        self.requests: Dict[str, List[float]] = {}
        self._last_sweep: Optional[float] = None
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        window = self.options.window_seconds
        if self._last_sweep is None:
            self._last_sweep = now
        if now - self._last_sweep < window:
            return
        self._last_sweep = now
        for key in [k for k, stamps in self.requests.items() if not stamps or now - stamps[-1] >= window]:
            del self.requests[key]

    def is_allowed(self, key: str, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        window = self.options.window_seconds
        with self._lock:
            self._sweep(now)
            recent = [t for t in self.requests.get(key, ()) if now - t < window]
            if len(recent) >= self.options.max_requests:
                self.requests[key] = recent
                return False
            recent.append(now)
            self.requests[key] = recent
            return True

    def reset(self) -> None:
        with self._lock:
            self.requests.clear()
            self._last_sweep = None
