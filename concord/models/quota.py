"""Per-resource quota tracking shared by every dispatch caller.

Rate limits are enforced by the provider per account, not per connection,
so one tracker instance holds the state for every resource key (model id)
and every client targeting that key reads and writes the same record.

Timestamps are epoch seconds from the tracker's clock; waits are reported
in milliseconds.

Example:
    >>> tracker = QuotaTracker()
    >>> tracker.update_from_success("llama-3.1-8b-instant", headers)
    >>> tracker.get_wait_ms("llama-3.1-8b-instant")
    0.0
"""
from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Mapping

logger = logging.getLogger(__name__)

DEFAULT_LIMIT_REQUESTS = 14400
DEFAULT_LIMIT_TOKENS = 6000
DEFAULT_LIMIT_TOKENS_DAILY = 500000
DAY_SECONDS = 24 * 60 * 60

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_RETRY_HINT = re.compile(r"try again in\s*((?:\d+(?:\.\d+)?(?:ms|h|m|s))+)", re.IGNORECASE)


def parse_duration(duration: str) -> float:
    """Parse durations like "2h26m52.8s", "50.06s" or "420ms" into milliseconds."""
    ms = 0.0
    for value, unit in _DURATION_PART.findall(duration or ""):
        amount = float(value)
        if unit == "h":
            ms += amount * 60 * 60 * 1000
        elif unit == "m":
            ms += amount * 60 * 1000
        elif unit == "s":
            ms += amount * 1000
        else:
            ms += amount
    return ms


def format_wait(ms: float) -> str:
    seconds = int(math.ceil(ms / 1000))
    if seconds < 60:
        return f"{seconds}s"
    minutes, rem_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {rem_seconds}s" if rem_seconds else f"{minutes}m"
    hours, rem_minutes = divmod(minutes, 60)
    return f"{hours}h {rem_minutes}m"


def classify_limit(message: str) -> str:
    """Infer which budget a rate-limit message refers to: daily, requests or tokens."""
    text = message or ""
    lower = text.lower()
    if "TPD" in text or "tokens per day" in lower:
        return "daily"
    if "RPM" in text or "RPD" in text or "requests per" in lower:
        return "requests"
    if "per day" in lower:
        return "daily"
    return "tokens"


@dataclass
class QuotaState:
    limit_requests: int = 0
    remaining_requests: int = 0
    reset_requests_at: float = 0.0

    limit_tokens: int = 0
    remaining_tokens: int = 0
    reset_tokens_at: float = 0.0

    limit_tokens_daily: int = DEFAULT_LIMIT_TOKENS_DAILY
    remaining_tokens_daily: int = DEFAULT_LIMIT_TOKENS_DAILY
    reset_tokens_daily_at: float = 0.0

    last_updated: float = 0.0


class QuotaTracker:
    """Keyed store of quota state with one asyncio lock per resource key."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._states: Dict[str, QuotaState] = {}
        self._initialized: set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Dict[str, int] = {}

    def lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def get(self, key: str) -> QuotaState | None:
        return self._states.get(key)

    def is_initialized(self, key: str) -> bool:
        return key in self._initialized

    def enter(self, key: str) -> int:
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        return self._in_flight[key]

    def leave(self, key: str) -> None:
        self._in_flight[key] = max(0, self._in_flight.get(key, 0) - 1)

    def in_flight(self, key: str) -> int:
        return self._in_flight.get(key, 0)

    async def initialize(self, key: str, probe: Callable[[], Awaitable[Any]]) -> None:
        """Seed state for ``key`` from one minimal probe call. Runs at most once per key."""
        async with self.lock(key):
            if key in self._initialized:
                return
            logger.info("Initializing quota state for %s", key)
            try:
                result = await probe()
            except Exception:
                logger.warning("Could not initialize quota for %s, will update on first real request", key, exc_info=True)
                self._initialized.add(key)
                return
            headers = getattr(result, "headers", None) or {}
            if getattr(result, "rate_limited", False):
                self.update_from_failure(key, getattr(result, "error", "") or "", headers)
            elif headers:
                self.update_from_success(key, headers)
            self._initialized.add(key)
            state = self._states.get(key)
            if state:
                logger.info(
                    "Quota initialized for %s: %s/%s requests, %s/%s tokens",
                    key, state.remaining_requests, state.limit_requests,
                    state.remaining_tokens, state.limit_tokens,
                )

    def update_from_success(self, key: str, headers: Mapping[str, str]) -> QuotaState:
        now = self.clock()
        state = self._states.get(key)
        if state is None:
            state = QuotaState(reset_tokens_daily_at=now + DAY_SECONDS, last_updated=now)
            self._states[key] = state
        headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}

        if headers.get("x-ratelimit-limit-requests"):
            state.limit_requests = _as_int(headers["x-ratelimit-limit-requests"], state.limit_requests)
        if headers.get("x-ratelimit-remaining-requests"):
            state.remaining_requests = _as_int(headers["x-ratelimit-remaining-requests"], state.remaining_requests)
        if headers.get("x-ratelimit-reset-requests"):
            state.reset_requests_at = now + parse_duration(headers["x-ratelimit-reset-requests"]) / 1000

        if headers.get("x-ratelimit-limit-tokens"):
            state.limit_tokens = _as_int(headers["x-ratelimit-limit-tokens"], state.limit_tokens)
        if headers.get("x-ratelimit-remaining-tokens"):
            state.remaining_tokens = _as_int(headers["x-ratelimit-remaining-tokens"], state.remaining_tokens)
        if headers.get("x-ratelimit-reset-tokens"):
            state.reset_tokens_at = now + parse_duration(headers["x-ratelimit-reset-tokens"]) / 1000

        state.last_updated = now
        return state

    def update_from_failure(self, key: str, message: str, headers: Mapping[str, str] | None = None) -> QuotaState:
        now = self.clock()
        state = self._states.get(key)
        if state is None:
            state = QuotaState(
                limit_requests=DEFAULT_LIMIT_REQUESTS,
                remaining_requests=0,
                reset_requests_at=now,
                limit_tokens=DEFAULT_LIMIT_TOKENS,
                remaining_tokens=0,
                reset_tokens_at=now,
                limit_tokens_daily=DEFAULT_LIMIT_TOKENS_DAILY,
                remaining_tokens_daily=0,
                reset_tokens_daily_at=now,
                last_updated=now,
            )
            self._states[key] = state
        headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        if headers:
            self.update_from_success(key, headers)

        bucket = classify_limit(message)
        wait_ms: float | None = None
        match = _RETRY_HINT.search(message or "")
        if match:
            wait_ms = parse_duration(match.group(1))
        elif headers.get("retry-after"):
            try:
                wait_ms = float(headers["retry-after"]) * 1000
            except ValueError:
                wait_ms = None

        if wait_ms is not None:
            reset_at = now + wait_ms / 1000
            if bucket == "daily":
                state.remaining_tokens_daily = 0
                state.reset_tokens_daily_at = reset_at
            elif bucket == "requests":
                state.remaining_requests = 0
                state.reset_requests_at = reset_at
            else:
                state.remaining_tokens = 0
                state.reset_tokens_at = reset_at
            logger.info("Rate limit on %s (%s budget), reset in %s", key, bucket, format_wait(wait_ms))

        state.last_updated = now
        return state

    def get_wait_ms(self, key: str) -> float:
        """Longest currently active wait across requests, per-minute and per-day tokens."""
        state = self._states.get(key)
        if state is None:
            return 0.0
        now = self.clock()
        max_wait = 0.0
        if state.remaining_tokens <= 0 and state.reset_tokens_at > now:
            max_wait = max(max_wait, (state.reset_tokens_at - now) * 1000)
        if state.remaining_requests <= 0 and state.reset_requests_at > now:
            max_wait = max(max_wait, (state.reset_requests_at - now) * 1000)
        if state.remaining_tokens_daily <= 0 and state.reset_tokens_daily_at > now:
            max_wait = max(max_wait, (state.reset_tokens_daily_at - now) * 1000)
        return max_wait

    def reserve(self, key: str, tokens: int) -> None:
        state = self._states.get(key)
        if state is None or tokens <= 0:
            return
        state.remaining_tokens = max(0, state.remaining_tokens - tokens)
        if state.remaining_requests > 0:
            state.remaining_requests -= 1

    def refresh_tokens(self, key: str) -> None:
        """Pessimistic refresh after waiting out a per-minute reset."""
        state = self._states.get(key)
        if state is None:
            return
        state.remaining_tokens = state.limit_tokens
        state.last_updated = self.clock()

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {key: asdict(state) for key, state in self._states.items()}


def _as_int(value: str, default: int) -> int:
    try:
        return int(float(value))
    except ValueError:
        return default


_default_tracker = QuotaTracker()


def default_tracker() -> QuotaTracker:
    """Process-wide tracker shared by every client that is not given its own."""
    return _default_tracker
