"""Phase instructions and compact user prompts for the language-model oracle."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass
class PhaseInstructions:
    """System prompt text and sampling settings for one oracle phase."""
    system: str
    temperature: float = 0.7
    max_tokens: int = 2000


_JSON_ONLY = "Respond with ONLY valid JSON (no markdown, no explanation)."

ELICITATION = PhaseInstructions(
    system=(
        "You are a concierge talking with one participant of a group decision. "
        "Find out what they need (concerns) and what they want (desires).\n\n"
        "Concern severity: non-negotiable | strong-preference | preference | nice-to-have.\n"
        "Desire intensity: must-have | would-love | would-like | nice-to-have.\n"
        "Map their words to the lowest level they actually support; vague answers "
        "(\"whatever works\", \"I can chip in\") are nice-to-have at most.\n"
        "Before finishing, ask about deal-breakers (diet, timing, accessibility, budget) "
        "and confirm the severity of anything that could be one.\n\n"
        "Signals: complete (you have enough), deepen (follow up on a topic), "
        "expand (ask about new topics), needs-more-info, opt-out (they will not take part).\n\n"
        + _JSON_ONLY + "\n"
        '{"tags": [{"text": "...", "type": "concern|desire", "severity": "...", '
        '"intensity": "...", "quote": "...", "underlying": "..."}], '
        '"message": "your reply to them", "signal": "complete|deepen|expand|needs-more-info|opt-out"}'
    ),
    temperature=0.5,
    max_tokens=1200,
)

STRUCTURING = PhaseInstructions(
    system=(
        "You structure a group decision before anyone solves it. List the decisions to "
        "make (category: when | where | what | budget | who | how), mark each one with a "
        "conflict when participants' positions cannot all hold at once (check arithmetic on "
        "times, budgets and quantities), record couplings between categories that must be "
        "decided together, and list what everyone already agrees on.\n\n"
        + _JSON_ONLY + "\n"
        '{"questions": [{"category": "...", "question": "...", "hasConflict": true}], '
        '"couplings": [{"categories": ["what", "budget"], "nature": "..."}], '
        '"consensusItems": ["..."]}'
    ),
    temperature=0.3,
)

SYNTHESIS = PhaseInstructions(
    system=(
        "You help a group reach consensus. The problem is already structured; propose "
        "concrete, specific solutions that satisfy every non-negotiable and respect the "
        "couplings. Check feasibility before proposing: numbers must add up and the thing "
        "must exist at that price. Anything infeasible is a tension, not a proposal; "
        "describe why and offer resolutions with their tradeoffs. When earlier feedback is "
        "given, address each objection directly.\n\n"
        + _JSON_ONLY + "\n"
        '{"proposals": [{"question": "...", "proposal": "...", "rationale": "...", '
        '"addressedConcerns": ["..."], "addressedDesires": ["..."]}], '
        '"tensions": [{"description": "...", "constraintsInvolved": ["..."], '
        '"possibleResolutions": ["..."]}]}'
    ),
    temperature=0.5,
)

CONTEXTUALIZATION = PhaseInstructions(
    system=(
        "You personalize a proposal for one participant: tell them how it affects what "
        "they care about. Lead with what works for them, name what might not, and suggest "
        "what they could raise with the group. Confidence is high when every concern is "
        "explicitly addressed, low when a non-negotiable is not.\n\n"
        + _JSON_ONLY + "\n"
        '{"summary": "...", "confidence": "high|medium|low", '
        '"highlights": ["..."], "concerns": ["..."]}'
    ),
    temperature=0.4,
    max_tokens=1000,
)

RESPONSE = PhaseInstructions(
    system=(
        "Decide how this person responds to the proposal.\n"
        "A constraint is satisfied only if the proposal addresses it explicitly; implied or "
        "assumed counts as not satisfied.\n"
        "- Any flex:0 constraint unsatisfied: type MUST be \"object\".\n"
        "- Non-negotiables met but a strong preference (flex 0.1-0.3) unmet: "
        "\"accept-with-reservations\".\n"
        "- Everything important met: \"accept\".\n"
        "- They no longer want to take part: \"opt-out\".\n"
        "nonNegotiablesSatisfied is true only if every flex:0 constraint is satisfied.\n\n"
        + _JSON_ONLY + "\n"
        '{"type": "accept|accept-with-reservations|object|opt-out", "reasoning": "...", '
        '"nonNegotiablesSatisfied": true, "constraintAnalysis": [{"constraint": "...", '
        '"satisfied": true, "evidence": "exact quote or NOT ADDRESSED"}], '
        '"concerns": ["..."], "suggestions": ["..."]}'
    ),
    temperature=0.3,
    max_tokens=1000,
)

PARTY_REPLY = PhaseInstructions(
    system=(
        "You are roleplaying a USER in a planning conversation.\n"
        "- flex:0 = non-negotiable: state it clearly.\n"
        "- flex:0.1-0.3 = strong preference: state it clearly.\n"
        "- flex:0.4-0.7 = preference: mention it when relevant.\n"
        "- flex:0.8+ = nice to have: mention it only if it fits.\n"
        "Speak in your own style. Set done=true once your main points are covered.\n"
        'Output JSON only: {"message": "your reply", "done": false, "reasoning": "private notes"}'
    ),
    temperature=0.7,
    max_tokens=400,
)

PHASE_INSTRUCTIONS: Dict[str, PhaseInstructions] = {
    "elicitation": ELICITATION,
    "structuring": STRUCTURING,
    "synthesis": SYNTHESIS,
    "contextualization": CONTEXTUALIZATION,
    "response": RESPONSE,
    "party": PARTY_REPLY,
}


def get_phase_instructions(phase: str) -> PhaseInstructions:
    """Look up the instructions for a phase."""
    try:
        return PHASE_INSTRUCTIONS[phase]
    except KeyError:
        raise KeyError(f"unknown oracle phase: {phase}") from None


# ---------------------------------------------------------------------------
# User prompt builders
# ---------------------------------------------------------------------------


def _history_lines(history: List[Dict[str, Any]], you: str = "Participant", limit: int | None = None) -> List[str]:
    turns = history[-limit:] if limit else history
    lines = []
    for turn in turns:
        speaker = you if turn.get("role") == "user" else "Concierge"
        lines.append(f"{speaker}: {turn.get('content', '')}")
    return lines


def _constraint_lines(constraints: List[Dict[str, Any]]) -> List[str]:
    lines = []
    for c in constraints:
        owner = c.get("owner") or "someone"
        lines.append(f"- {c.get('text', '')} ({owner})")
    return lines


def _collaboration_lines(collab: Dict[str, Any]) -> List[str]:
    lines = [f"OUTCOME: {collab.get('outcome', '')}", f"CREATOR: {collab.get('creator', '')}"]
    names = ", ".join(p.get("name", p.get("id", "")) for p in collab.get("participants", []))
    if names:
        lines.append(f"PARTICIPANTS: {names}")
    if collab.get("when"):
        lines.append(f"WHEN: {collab['when']}")
    if collab.get("where"):
        lines.append(f"WHERE: {collab['where']}")
    constraints = collab.get("constraints") or []
    if constraints:
        lines.append("KNOWN CONSTRAINTS:")
        lines.extend(_constraint_lines(constraints))
    return lines


def _participant_lines(participants: List[Dict[str, Any]]) -> List[str]:
    lines = []
    for p in participants:
        lines.append(f"{p.get('name', p.get('id', ''))}:")
        for tag in p.get("tags", []):
            lines.append(f"  - [{tag.get('type')}] \"{tag.get('text')}\" ({tag.get('level')})")
    return lines


def build_elicitation_prompt(payload: Dict[str, Any]) -> str:
    participant = payload.get("participant", {})
    lines = _collaboration_lines(payload.get("collaboration", {}))
    lines.append(f"TALKING WITH: {participant.get('name', '')}")
    history = payload.get("history") or []
    if history:
        lines.append("CONVERSATION SO FAR:")
        lines.extend(_history_lines(history[:-1]))
    lines.append(f'THEY JUST SAID: "{payload.get("message", "")}"')
    return "\n".join(lines)


def build_structuring_prompt(payload: Dict[str, Any]) -> str:
    lines = _collaboration_lines(payload.get("collaboration", {}))
    lines.append("WHAT EACH PARTICIPANT TOLD US:")
    lines.extend(_participant_lines(payload.get("participants", [])))
    return "\n".join(lines)


def build_synthesis_prompt(payload: Dict[str, Any]) -> str:
    lines = _collaboration_lines(payload.get("collaboration", {}))
    lines.append("PARTICIPANTS:")
    lines.extend(_participant_lines(payload.get("participants", [])))
    structure = payload.get("structure") or {}
    if structure:
        lines.append("PROBLEM STRUCTURE:")
        lines.append(json.dumps(structure, indent=1))
    feedback = payload.get("previousFeedback") or []
    if feedback:
        lines.append(f"FEEDBACK ON ROUND {payload.get('previousRound', '?')} PROPOSAL:")
        for item in feedback:
            lines.append(f"- {item.get('name', item.get('partyId'))} ({item.get('type')}): {item.get('reasoning', '')}")
            for concern in item.get("concerns", []):
                lines.append(f"    concern: {concern}")
            for suggestion in item.get("suggestions", []):
                lines.append(f"    suggestion: {suggestion}")
    return "\n".join(lines)


def build_contextualization_prompt(payload: Dict[str, Any]) -> str:
    lines = _collaboration_lines(payload.get("collaboration", {}))
    lines.append("FOR:")
    lines.extend(_participant_lines([payload.get("participant", {})]))
    lines.append("PROPOSAL:")
    lines.append(json.dumps(payload.get("proposal", {}), indent=1))
    return "\n".join(lines)


def _persona_line(persona: Dict[str, Any]) -> str:
    style = persona.get("style") or {}
    style_text = ", ".join(f"{k}={v}" for k, v in sorted(style.items()))
    line = f"PERSONA: {persona.get('name', '')} | flex:{persona.get('flexibility', 0.5)}"
    return f"{line} | {style_text}" if style_text else line


def build_response_prompt(payload: Dict[str, Any]) -> str:
    persona = payload.get("persona", {})
    lines = [
        _persona_line(persona),
        "CONSTRAINTS: " + "; ".join(persona.get("constraints", [])),
        f"TOPIC: {payload.get('outcome', '')}",
        "PROPOSAL:",
        json.dumps(payload.get("proposal", {}), indent=1),
    ]
    context = payload.get("contextualization") or {}
    if context.get("summary"):
        lines.append(f"WHAT THE CONCIERGE TOLD THEM: {context['summary']}")
    return "\n".join(lines)


def build_party_reply_prompt(payload: Dict[str, Any]) -> str:
    persona = payload.get("persona", {})
    lines = [
        _persona_line(persona),
        "CONSTRAINTS: " + "; ".join(persona.get("constraints", [])),
        f"TOPIC: {payload.get('outcome', '')}",
    ]
    # Last two exchanges only; the quota is measured in tokens per minute.
    recent = _history_lines(payload.get("history") or [], you="You", limit=4)
    if recent:
        lines.append("HISTORY:")
        lines.extend(recent)
    lines.append(f'Concierge: "{payload.get("aiMessage", "")}"')
    lines.append(f"Respond as {persona.get('name', '')}:")
    return "\n".join(lines)


PROMPT_BUILDERS = {
    "elicitation": build_elicitation_prompt,
    "structuring": build_structuring_prompt,
    "synthesis": build_synthesis_prompt,
    "contextualization": build_contextualization_prompt,
    "response": build_response_prompt,
    "party": build_party_reply_prompt,
}
