"""The semantic oracle: judgments the engine cannot make deterministically."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from concord.config import Config
from concord.models.dispatch import DispatchClient, OracleRequest
from concord.models.groq import GroqClient
from concord.models.quota import QuotaTracker
from concord.models.repair import PhaseSchema
from concord.prompts import PROMPT_BUILDERS, get_phase_instructions
from concord.state import RESPONSE_TYPES

logger = logging.getLogger(__name__)

PHASE_SCHEMAS: Dict[str, PhaseSchema] = {
    "elicitation": PhaseSchema("elicitation", {"tags": (list,), "message": (str,), "signal": (str,)}),
    "structuring": PhaseSchema("structuring", {"questions": (list,), "couplings": (list,), "consensusItems": (list,)}),
    "synthesis": PhaseSchema("synthesis", {"proposals": (list,)}),
    "contextualization": PhaseSchema("contextualization", {"confidence": (str,), "summary": (str,)}),
    "response": PhaseSchema(
        "response",
        {"type": (str,), "reasoning": (str,)},
        choices={"type": RESPONSE_TYPES},
    ),
    "party": PhaseSchema("party", {"message": (str,), "done": (bool,)}),
}


class SemanticOracle:
    """Interface for the phase judgments.

    Each method takes a structured payload and returns the phase's JSON
    object. Implementations may be a language model or any deterministic
    engine; the orchestrator only depends on this interface.
    """

    async def elicit(self, payload: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def structure(self, payload: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def synthesize(self, payload: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def contextualize(self, payload: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def decide_response(self, payload: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def reply_as_party(self, payload: Dict[str, Any], cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        raise NotImplementedError


class LLMOracle(SemanticOracle):
    """Oracle backed by a chat-completions model through the dispatch client."""

    def __init__(
        self,
        dispatch: DispatchClient,
        phase_models: Dict[str, str],
        default_model: str = "llama-3.1-8b-instant",
        max_tokens: int = 2000,
        json_mode: bool = True,
    ) -> None:
        self.dispatch = dispatch
        self.phase_models = dict(phase_models)
        self.default_model = default_model
        self.max_tokens = max_tokens
        self.json_mode = json_mode

    @classmethod
    def from_config(cls, config: Config, tracker: QuotaTracker | None = None) -> "LLMOracle":
        client = GroqClient.from_config(config.models)
        if not client.available:
            logger.warning("No API key in %s; oracle calls will fail", config.models.get("api_key_env", "GROQ_API_KEY"))
        dispatch = DispatchClient.from_config(client, config.dispatch, tracker=tracker)
        return cls(
            dispatch,
            phase_models={phase: config.phase_model(phase) for phase in PHASE_SCHEMAS},
            default_model=config.phase_model("default"),
            max_tokens=int(config.models.get("max_tokens", 2000)),
            json_mode=bool(config.models.get("json_mode", True)),
        )

    def model_for(self, phase: str) -> str:
        return self.phase_models.get(phase) or self.default_model

    async def _ask(self, phase: str, payload: Dict[str, Any], cancel: Optional[asyncio.Event]) -> Dict[str, Any]:
        instructions = get_phase_instructions(phase)
        request = OracleRequest(
            system=instructions.system,
            user=PROMPT_BUILDERS[phase](payload),
            temperature=instructions.temperature,
            max_tokens=min(instructions.max_tokens, self.max_tokens),
            json_mode=self.json_mode,
        )
        model = self.model_for(phase)
        logger.debug("Oracle %s via %s (%s prompt chars)", phase, model, len(request.user))
        return await self.dispatch.call(request, model, schema=PHASE_SCHEMAS[phase], cancel=cancel)

    async def elicit(self, payload, cancel=None):
        return await self._ask("elicitation", payload, cancel)

    async def structure(self, payload, cancel=None):
        return await self._ask("structuring", payload, cancel)

    async def synthesize(self, payload, cancel=None):
        return await self._ask("synthesis", payload, cancel)

    async def contextualize(self, payload, cancel=None):
        return await self._ask("contextualization", payload, cancel)

    async def decide_response(self, payload, cancel=None):
        return await self._ask("response", payload, cancel)

    async def reply_as_party(self, payload, cancel=None):
        return await self._ask("party", payload, cancel)
