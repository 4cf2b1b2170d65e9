"""
Per-submitter submission guard
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from app.core.config import settings
from app.core.errors import RateLimitedError

logger = logging.getLogger(__name__)

# Expired windows are dropped at most this often
SWEEP_INTERVAL_SECONDS = 60


class SubmissionGuard(Protocol):
    """Anything that can admit or refuse one submission for a key.

    `check` raises RateLimitedError on refusal and records the attempt on
    admission. Implementations backed by shared storage can replace the
    in-memory one without callers changing.
    """

    def check(self, key: str, now: Optional[float] = None, limit: Optional[int] = None) -> None:
        ...


@dataclass
class _Window:
    count: int
    reset_time: float
    last_request: float


class InMemorySubmissionGuard:
    """Fixed-window counter plus a cooldown between consecutive submissions.

    The hourly window starts at a key's first submission and resets as a
    whole once `reset_time` passes, so a burst straddling the boundary can
    admit up to twice the maximum. State lives in this process only; separate
    instances each enforce their own view.
    """

    def __init__(
        self,
        max_per_window: int = None,
        window_seconds: int = None,
        cooldown_seconds: int = None
    ):
        self.max_per_window = max_per_window or settings.REQUESTS_PER_WINDOW
        self.window_seconds = window_seconds or settings.RATE_WINDOW_SECONDS
        self.cooldown_seconds = settings.SUBMIT_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = 0.0

    def check(self, key: str, now: Optional[float] = None, limit: Optional[int] = None) -> None:
        now = time.time() if now is None else now
        maximum = limit or self.max_per_window
        if now >= self._next_sweep:
            self._sweep(now)

        window = self._windows.get(key)
        if window is None:
            window = _Window(count=0, reset_time=now + self.window_seconds, last_request=0.0)
        elif now > window.reset_time:
            window.count = 0
            window.reset_time = now + self.window_seconds

        if window.count >= maximum:
            logger.info(f"Submission limit reached for {key[:12]}")
            raise RateLimitedError(
                f"Maximum {maximum} requests per hour exceeded. Please try again later.",
                retry_after=window.reset_time - now
            )

        since_last = now - window.last_request
        if window.last_request and since_last < self.cooldown_seconds:
            raise RateLimitedError(
                f"Please wait {self.cooldown_seconds} seconds before making another request.",
                retry_after=self.cooldown_seconds - since_last
            )

        window.count += 1
        window.last_request = now
        self._windows[key] = window

    def _sweep(self, now: float) -> None:
        expired = [
            key for key, window in self._windows.items()
            if window.reset_time < now and now - window.last_request >= self.cooldown_seconds
        ]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS
        if expired:
            logger.debug(f"Dropped {len(expired)} expired submission windows")

    def __len__(self) -> int:
        return len(self._windows)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)


def submitter_key(tenant_id: int, ip_hash: str) -> str:
    return f"{tenant_id}:{ip_hash}"
