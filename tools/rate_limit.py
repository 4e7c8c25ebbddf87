"""
Sliding-window rate limiter for tool invocations.

Each key (`tool_id:scope`) keeps a log of call timestamps; a call is
admitted when fewer than `requests` calls happened in the last `window`
milliseconds. Keys whose window has emptied are dropped. The limiter is
the only mutable structure shared across sessions, so every check runs
under an asyncio.Lock.
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Optional

import structlog

from models.errors import ToolRateLimited
from tools.models import RateLimit

logger = structlog.get_logger()


class SlidingWindowRateLimiter:

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._calls: dict[str, deque[float]] = {}
        self._windows: dict[str, float] = {}         # key → window in seconds
        self._lock = asyncio.Lock()

    async def acquire(self, tool_id: str, limit: RateLimit, scope: str = "") -> int:
        """Record a call and return the calls left in the window.

        Raises ToolRateLimited without recording the call.
        """
        key = f"{tool_id}:{scope}"
        async with self._lock:
            now = self._clock()
            self._prune(now)
            calls = self._calls.get(key, deque())
            if len(calls) >= limit.requests:
                logger.warning("tool_rate_limited",
                               tool_id=tool_id, scope=scope,
                               limit=limit.requests, window_ms=limit.window)
                raise ToolRateLimited(tool_id, limit.requests, limit.window)
            calls.append(now)
            self._calls[key] = calls
            self._windows[key] = limit.window / 1000.0
            return limit.requests - len(calls)

    def _prune(self, now: float):
        for key in list(self._calls):
            calls, window = self._calls[key], self._windows[key]
            while calls and now - calls[0] >= window:
                calls.popleft()
            if not calls:
                del self._calls[key]
                del self._windows[key]
