"""Quota-aware dispatch of structured oracle requests.

All waiting is driven by the shared QuotaTracker: a call is delayed only
when the tracked budget for its resource key is exhausted or too small
for the estimated cost, and only until the tracked reset time.
"""
from __future__ import annotations

import asyncio
import logging
import math
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from concord.models.groq import ChatResult, GroqClient
from concord.models.quota import QuotaTracker, default_tracker, format_wait
from concord.models.repair import PhaseSchema, parse_json_payload, repair_json

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class DispatchError(Exception):
    """Base class for dispatch failures surfaced to callers."""


class QuotaExhaustedError(DispatchError):
    """Raised when rate-limit retries exceed the attempt budget."""


class ParseFailureError(DispatchError):
    """Raised when oracle output stays malformed after retries and repair."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class TransportError(DispatchError):
    """Raised immediately for failures that are neither quota nor malformed output."""


class NegotiationCancelled(Exception):
    """Raised when a run's cancel event fires during a wait or call."""


@dataclass
class OracleRequest:
    system: str
    user: str
    temperature: float = 0.7
    max_tokens: int = 2000
    json_mode: bool = True


def estimate_tokens(text: str) -> int:
    return int(math.ceil(len(text or "") / 4))


async def race_cancel(awaitable: Awaitable[Any], cancel: Optional[asyncio.Event]) -> Any:
    """Await ``awaitable`` unless ``cancel`` fires first."""
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise NegotiationCancelled("run cancelled")
    work = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
    if work in done:
        return work.result()
    work.cancel()
    raise NegotiationCancelled("run cancelled")


class DispatchClient:
    """Issues one structured request per call, absorbing quota waits and malformed output."""

    def __init__(
        self,
        client: GroqClient,
        tracker: QuotaTracker | None = None,
        max_rate_limit_attempts: int = 10,
        max_malformed_retries: int = 3,
        malformed_retry_delay: float = 1.0,
        proactive_buffer: float = 1.0,
        max_jitter: float = 2.0,
        completion_estimate: int = 500,
        probe_quota: bool = True,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.client = client
        self.tracker = tracker or default_tracker()
        self.max_rate_limit_attempts = max_rate_limit_attempts
        self.max_malformed_retries = max_malformed_retries
        self.malformed_retry_delay = malformed_retry_delay
        self.proactive_buffer = proactive_buffer
        self.max_jitter = max_jitter
        self.completion_estimate = completion_estimate
        self.probe_quota = probe_quota
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, client: GroqClient, config: Dict[str, Any], tracker: QuotaTracker | None = None) -> "DispatchClient":
        return cls(
            client,
            tracker=tracker,
            max_rate_limit_attempts=int(config.get("max_rate_limit_attempts", 10)),
            max_malformed_retries=int(config.get("max_malformed_retries", 3)),
            malformed_retry_delay=float(config.get("malformed_retry_delay_seconds", 1.0)),
            proactive_buffer=float(config.get("proactive_buffer_seconds", 1.0)),
            max_jitter=float(config.get("max_jitter_seconds", 2.0)),
            completion_estimate=int(config.get("completion_token_estimate", 500)),
            probe_quota=bool(config.get("probe_quota", True)),
        )

    async def call(
        self,
        request: OracleRequest,
        resource_key: str,
        estimated_cost: int | None = None,
        schema: PhaseSchema | None = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        if estimated_cost is None:
            estimated_cost = estimate_tokens(request.system + request.user) + self.completion_estimate

        self.tracker.enter(resource_key)
        try:
            if self.probe_quota and not self.tracker.is_initialized(resource_key):
                await race_cancel(self.tracker.initialize(resource_key, lambda: self.probe(resource_key)), cancel)

            async with self.tracker.lock(resource_key):
                await self._proactive_wait(resource_key, estimated_cost, cancel)
                contended = self.tracker.in_flight(resource_key) > 1
                await self._wait_for_quota(resource_key, cancel, jitter=contended)
                self.tracker.reserve(resource_key, estimated_cost)

            return await self._call_with_retry(request, resource_key, schema, cancel)
        finally:
            self.tracker.leave(resource_key)

    async def probe(self, resource_key: str) -> ChatResult:
        """Minimal call whose response headers seed the quota state."""
        return await self.client.chat("", "ping", model=resource_key, max_tokens=1, json_mode=False)

    async def _proactive_wait(self, resource_key: str, estimated_cost: int, cancel: Optional[asyncio.Event]) -> None:
        state = self.tracker.get(resource_key)
        if state is None or state.remaining_tokens >= estimated_cost:
            return
        now = self.tracker.clock()
        if state.reset_tokens_at <= now:
            return
        wait = state.reset_tokens_at - now + self.proactive_buffer
        logger.info(
            "Proactive wait on %s: need ~%s tokens, have %s; waiting %s",
            resource_key, estimated_cost, state.remaining_tokens, format_wait(wait * 1000),
        )
        await race_cancel(self._sleep(wait), cancel)
        self.tracker.refresh_tokens(resource_key)

    async def _wait_for_quota(self, resource_key: str, cancel: Optional[asyncio.Event], jitter: bool = False) -> None:
        wait_ms = self.tracker.get_wait_ms(resource_key)
        if wait_ms <= 0:
            return
        if jitter and self.max_jitter > 0:
            wait_ms += self._rng.uniform(0, self.max_jitter) * 1000
        logger.info("Quota limit reached for %s. Waiting %s for reset", resource_key, format_wait(wait_ms))
        await race_cancel(self._sleep(wait_ms / 1000), cancel)

    async def _call_with_retry(
        self,
        request: OracleRequest,
        resource_key: str,
        schema: PhaseSchema | None,
        cancel: Optional[asyncio.Event],
    ) -> Dict[str, Any]:
        rate_attempts = 0
        malformed_attempts = 0
        last_raw: str | None = None
        while True:
            result: ChatResult = await race_cancel(
                self.client.chat(
                    request.system,
                    request.user,
                    model=resource_key,
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                    json_mode=request.json_mode,
                ),
                cancel,
            )

            if result.ok:
                async with self.tracker.lock(resource_key):
                    self.tracker.update_from_success(resource_key, result.headers)
                payload = parse_json_payload(result.text)
                if payload is not None and (schema is None or schema.validate(payload)):
                    return payload
                last_raw = result.text
                logger.warning("Malformed output from %s (unparseable or off-schema)", resource_key)
            elif result.rate_limited:
                rate_attempts += 1
                logger.warning("Rate limit hit on %s (attempt %s)", resource_key, rate_attempts)
                async with self.tracker.lock(resource_key):
                    self.tracker.update_from_failure(resource_key, result.error or "", result.headers)
                    if rate_attempts >= self.max_rate_limit_attempts:
                        raise QuotaExhaustedError(
                            f"{resource_key}: rate limited after {rate_attempts} attempts: {result.error}"
                        )
                    await self._wait_for_quota(resource_key, cancel, jitter=True)
                continue
            elif result.malformed:
                last_raw = result.failed_generation or result.text or last_raw
                logger.warning("Oracle rejected malformed output on %s: %s", resource_key, result.error)
            else:
                raise TransportError(f"{resource_key}: {result.error or 'unknown error'}")

            malformed_attempts += 1
            if malformed_attempts <= self.max_malformed_retries:
                logger.info("Retrying malformed output on %s (retry %s)", resource_key, malformed_attempts)
                await race_cancel(self._sleep(self.malformed_retry_delay), cancel)
                continue

            repaired = repair_json(last_raw or "", schema)
            if repaired is not None:
                logger.info("Repaired malformed output from %s", resource_key)
                return repaired
            raise ParseFailureError(
                f"{resource_key}: output still malformed after {malformed_attempts} attempts",
                raw=last_raw,
            )
