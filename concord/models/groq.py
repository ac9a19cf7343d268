"""OpenAI-compatible chat completions client (Groq by default) for Concord."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)

MALFORMED_ERROR_CODES = {"json_validate_failed"}


@dataclass
class ChatResult:
    """Result from a chat completions call."""
    text: str = ""
    ok: bool = True
    error: str | None = None
    status_code: int = 200
    error_code: str | None = None
    failed_generation: str | None = None
    headers: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0
    usage: Dict[str, Any] | None = None

    @property
    def rate_limited(self) -> bool:
        return not self.ok and self.status_code == 429

    @property
    def malformed(self) -> bool:
        return not self.ok and self.error_code in MALFORMED_ERROR_CODES


class GroqClient:
    """Chat completions client using httpx, reporting quota headers on every result."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.groq.com/openai/v1",
        timeout: float = 120.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("GROQ_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "GroqClient":
        key_env = str(config.get("api_key_env", "GROQ_API_KEY"))
        return cls(
            api_key=os.environ.get(key_env, ""),
            base_url=str(config.get("base_url", "https://api.groq.com/openai/v1")),
            timeout=float(config.get("request_timeout_seconds", 120)),
        )

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def chat(
        self,
        system: str,
        user: str,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        json_mode: bool = True,
    ) -> ChatResult:
        if not self.api_key:
            return ChatResult(ok=False, status_code=0, error="GROQ_API_KEY not set")

        body: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )

            duration_ms = (time.perf_counter() - start) * 1000
            headers = {str(k).lower(): str(v) for k, v in response.headers.items()}

            if response.status_code != 200:
                return self._error_result(response, headers, duration_ms)

            data = response.json()
            choices = data.get("choices", [])
            if not choices:
                return ChatResult(
                    ok=False,
                    status_code=response.status_code,
                    error="No choices in response",
                    headers=headers,
                    duration_ms=duration_ms,
                )

            text = (choices[0].get("message") or {}).get("content") or ""
            usage_meta = data.get("usage", {}) or {}
            usage = {
                "prompt_tokens": usage_meta.get("prompt_tokens", 0),
                "completion_tokens": usage_meta.get("completion_tokens", 0),
                "total_tokens": usage_meta.get("total_tokens", 0),
            }
            return ChatResult(
                text=text,
                ok=True,
                headers=headers,
                duration_ms=duration_ms,
                usage=usage,
            )

        except httpx.TimeoutException:
            duration_ms = (time.perf_counter() - start) * 1000
            return ChatResult(
                ok=False,
                status_code=0,
                error=f"Chat API timeout after {self.timeout}s",
                duration_ms=duration_ms,
            )
        except httpx.HTTPError as e:
            duration_ms = (time.perf_counter() - start) * 1000
            return ChatResult(
                ok=False,
                status_code=0,
                error=str(e),
                duration_ms=duration_ms,
            )

    def _error_result(self, response: httpx.Response, headers: Dict[str, str], duration_ms: float) -> ChatResult:
        error_text = response.text[:500]
        error_code = None
        failed_generation = None
        message = error_text
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            err = payload["error"]
            error_code = err.get("code")
            failed_generation = err.get("failed_generation")
            message = str(err.get("message") or error_text)
        return ChatResult(
            ok=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {message}",
            error_code=str(error_code) if error_code else None,
            failed_generation=failed_generation,
            headers=headers,
            duration_ms=duration_ms,
        )
