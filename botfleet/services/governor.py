"""
Quota & Rate Governor.

Per-plan bot quota plus in-memory request limiters. Limiter state is
process-local and guarded by a threading.Lock; the methods are synchronous
and never await while holding it.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from botfleet.config import Settings, settings as default_settings
from botfleet.errors import QuotaExceeded, RateLimited
from botfleet.plans import get_plan

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class SlidingWindowLimiter:
    """Timestamps per key; a request is allowed while fewer than ``limit`` fall in the window."""

    def __init__(self, window_seconds: float, name: str = "requests", clock: Clock = time.monotonic):
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._windows: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int) -> None:
        """Count one request for ``key`` or raise RateLimited."""
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            window = [t for t in self._windows[key] if t > cutoff]
            if len(window) >= limit:
                self._windows[key] = window
                retry_after = window[0] + self.window_seconds - now
                raise RateLimited(f"Too many {self.name}, please try again later", int(retry_after) + 1)
            window.append(now)
            self._windows[key] = window

    def remaining(self, key: str, limit: int) -> int:
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            used = sum(1 for t in self._windows.get(key, ()) if t > cutoff)
        return max(0, limit - used)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def purge(self) -> int:
        """Drop keys whose timestamps have all expired. Returns keys removed."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            stale = [k for k, ts in self._windows.items() if not ts or ts[-1] <= cutoff]
            for k in stale:
                del self._windows[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class FixedWindowLimiter:
    """Counter per key that resets when its window elapses."""

    def __init__(self, window_seconds: float, name: str = "requests", clock: Clock = time.monotonic):
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._counters: Dict[str, Tuple[float, int]] = {}  # key → (window_start, count)
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int) -> bool:
        now = self._clock()
        with self._lock:
            start, count = self._counters.get(key, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            if count >= limit:
                self._counters[key] = (start, count)
                return False
            self._counters[key] = (start, count + 1)
            return True

    def hit(self, key: str, limit: int) -> None:
        if not self.allow(key, limit):
            with self._lock:
                start, _ = self._counters[key]
            retry_after = start + self.window_seconds - self._clock()
            raise RateLimited(f"Too many {self.name}", int(retry_after) + 1)

    def purge(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (start, _) in self._counters.items() if now - start >= self.window_seconds]
            for k in stale:
                del self._counters[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)


class Governor:
    """Quota check plus the named limiters the API and dispatch router use."""

    def __init__(self, cfg: Settings = default_settings, clock: Clock = time.monotonic):
        self.settings = cfg
        self.api = SlidingWindowLimiter(cfg.rate_limit_window_seconds, "requests", clock)
        self.login = SlidingWindowLimiter(15 * 60, "login attempts", clock)
        self.bot_creation = SlidingWindowLimiter(60 * 60, "bot creations", clock)
        self.webhook = FixedWindowLimiter(cfg.webhook_rate_window_seconds, "webhook calls", clock)

    # ── Quota ───────────────────────────────────────────────

    def check_bot_quota(self, user, current_count: int) -> None:
        """Raise QuotaExceeded when the user's plan has no bot slot left."""
        plan = user.plan
        limit = get_plan(plan, self.settings).max_bots
        if current_count >= limit:
            raise QuotaExceeded(
                f"Bot limit reached ({limit} on the {plan} plan). Upgrade to create more bots.",
                limit,
            )

    # ── Rate limits ─────────────────────────────────────────

    def check_api(self, identity: str, plan: Optional[str] = None) -> None:
        """identity is the user id when authenticated, else the client IP."""
        limit = get_plan(plan or "free", self.settings).rate_limit
        self.api.hit(identity, limit)

    def check_login(self, client_ip: str) -> None:
        self.login.hit(f"login:{client_ip}", self.settings.login_rate_limit)

    def check_bot_creation(self, user_id: str) -> None:
        self.bot_creation.hit(f"create:{user_id}", self.settings.bot_creation_rate_limit)

    def allow_webhook(self, bot_id: str) -> bool:
        return self.webhook.allow(f"webhook:{bot_id}", self.settings.webhook_rate_limit)

    def purge(self) -> int:
        removed = sum(
            limiter.purge() for limiter in (self.api, self.login, self.bot_creation, self.webhook)
        )
        if removed:
            logger.debug("Purged %d expired rate-limit windows", removed)
        return removed
