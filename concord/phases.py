"""Phase executors.

Each executor reads the negotiation state, makes its oracle call(s) and
returns the phase's typed output. Elicitation is the only one that writes
to a party: it appends to the transcript and stores the extraction.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from concord.models.dispatch import ParseFailureError
from concord.oracle import SemanticOracle
from concord.state import (
    Contextualization,
    Extraction,
    NegotiationState,
    PartyState,
    ProblemStructure,
    Proposal,
    Response,
    RoundRecord,
    Synthesis,
    Turn,
    safe_string,
)

logger = logging.getLogger(__name__)

GREETING = "Hi! I'm {name}, I'd love to join."


def _history(party: PartyState) -> List[Dict[str, str]]:
    return [{"role": turn.role, "content": turn.content} for turn in party.transcript]


def _persona_payload(party: PartyState) -> Dict[str, Any]:
    persona = party.persona
    return {
        "id": persona.id,
        "name": persona.name,
        "flexibility": persona.flexibility,
        "style": dict(persona.style),
        "constraints": persona.describe_constraints(),
    }


async def elicit_party(
    oracle: SemanticOracle,
    state: NegotiationState,
    party: PartyState,
    max_turns: int = 5,
    cancel: Optional[asyncio.Event] = None,
) -> int:
    """Run the elicitation conversation with one party; returns the turns used."""
    turns = 0
    while turns < max_turns and not party.elicitation_complete:
        turns += 1
        if turns == 1:
            party.transcript.append(Turn("user", GREETING.format(name=party.name)))
        payload = {
            "collaboration": state.to_payload(viewer_id=party.id),
            "participant": {"id": party.id, "name": party.name},
            "history": _history(party),
            "message": party.transcript[-1].content,
        }
        extraction = Extraction.from_payload(await oracle.elicit(payload, cancel=cancel))
        party.transcript.append(Turn("assistant", extraction.message))
        party.extraction = extraction

        if extraction.signal == "opt-out":
            party.opted_out = True
            party.elicitation_complete = True
            break
        if extraction.signal == "complete":
            party.elicitation_complete = True
            break

        reply = await oracle.reply_as_party(
            {
                "persona": _persona_payload(party),
                "outcome": state.outcome,
                "history": _history(party),
                "aiMessage": extraction.message,
            },
            cancel=cancel,
        )
        party.transcript.append(Turn("user", safe_string(reply.get("message"))))
        if reply.get("done") is True:
            party.elicitation_complete = True
            break

    if not party.elicitation_complete:
        logger.info("Elicitation for %s stopped at the %s-turn limit", party.name, max_turns)
    tag_count = len(party.extraction.tags) if party.extraction else 0
    logger.info("%s: %s tags extracted in %s turns", party.name, tag_count, turns)
    return turns


async def structure_problem(
    oracle: SemanticOracle,
    state: NegotiationState,
    cancel: Optional[asyncio.Event] = None,
) -> ProblemStructure:
    payload = {
        "collaboration": state.to_payload(),
        "participants": [p.to_participant() for p in state.parties],
    }
    structure = ProblemStructure.from_payload(await oracle.structure(payload, cancel=cancel))
    logger.info(
        "Structured problem: %s questions (%s in conflict), %s couplings",
        len(structure.questions), len(structure.conflicts), len(structure.couplings),
    )
    return structure


def previous_feedback(state: NegotiationState) -> List[Dict[str, Any]]:
    """Objections, concerns and suggestions from the last recorded round."""
    last = state.last_round
    if last is None:
        return []
    feedback = []
    for party_id, response in last.responses.items():
        if response.type == "accept" and not response.concerns:
            continue
        party = state.party(party_id)
        feedback.append({
            "partyId": party_id,
            "name": party.name if party else party_id,
            "type": response.type,
            "reasoning": response.reasoning,
            "concerns": list(response.concerns),
            "suggestions": list(response.suggestions),
        })
    return feedback


async def synthesize(
    oracle: SemanticOracle,
    state: NegotiationState,
    structure: ProblemStructure | None = None,
    cancel: Optional[asyncio.Event] = None,
) -> Synthesis:
    payload: Dict[str, Any] = {
        "collaboration": state.to_payload(),
        "participants": [p.to_participant() for p in state.parties],
        "structure": structure.to_payload() if structure else None,
    }
    feedback = previous_feedback(state)
    if feedback:
        payload["previousRound"] = len(state.rounds)
        payload["previousFeedback"] = feedback
    synthesis = Synthesis.from_payload(await oracle.synthesize(payload, cancel=cancel))
    logger.info("Synthesis: %s proposals, %s tensions", len(synthesis.proposals), len(synthesis.tensions))
    return synthesis


def select_proposal(synthesis: Synthesis, policy: str = "first") -> int | None:
    """Index of the proposal every party evaluates this round."""
    if not synthesis.proposals:
        return None
    if policy == "most_addressed":
        best = 0
        for index, proposal in enumerate(synthesis.proposals):
            if proposal.addressed_count > synthesis.proposals[best].addressed_count:
                best = index
        return best
    return 0


async def contextualize(
    oracle: SemanticOracle,
    state: NegotiationState,
    party: PartyState,
    proposal: Proposal,
    cancel: Optional[asyncio.Event] = None,
) -> Contextualization:
    payload = {
        "collaboration": state.to_payload(viewer_id=party.id),
        "participant": party.to_participant(),
        "proposal": proposal.to_payload(),
    }
    context = Contextualization.from_payload(await oracle.contextualize(payload, cancel=cancel))
    party.proposal = proposal
    party.contextualization = context
    return context


async def collect_response(
    oracle: SemanticOracle,
    state: NegotiationState,
    party: PartyState,
    proposal: Proposal,
    cancel: Optional[asyncio.Event] = None,
) -> Response:
    context = party.contextualization
    payload = {
        "persona": _persona_payload(party),
        "outcome": state.outcome,
        "proposal": proposal.to_payload(),
        "contextualization": {"summary": context.summary, "confidence": context.confidence} if context else {},
    }
    raw = await oracle.decide_response(payload, cancel=cancel)
    try:
        response = Response.from_payload(party.id, raw)
    except ValueError as e:
        raise ParseFailureError(f"response from {party.name}: {e}", raw=str(raw)) from e
    party.response = response
    logger.info("%s: %s", party.name, response.type)
    return response


def round_outcome(responses: Dict[str, Response]) -> str:
    types = [r.type for r in responses.values()]
    if "opt-out" in types:
        return "opt-outs"
    if "object" in types:
        return "objections"
    return "accepted"


def build_round(
    number: int,
    structure: ProblemStructure,
    synthesis: Synthesis,
    responses: Dict[str, Response],
    proposal_index: int | None,
) -> RoundRecord:
    # A round without a proposal leaves every tension standing.
    outcome = round_outcome(responses) if proposal_index is not None else "objections"
    return RoundRecord(
        number=number,
        structure=structure,
        synthesis=synthesis,
        responses=responses,
        outcome=outcome,
        proposal_index=proposal_index,
    )
