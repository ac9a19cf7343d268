"""Negotiation data model: parties, constraints, rounds and responses."""
from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

CONCERN_SEVERITIES = ("non-negotiable", "strong-preference", "preference", "nice-to-have")
DESIRE_INTENSITIES = ("must-have", "would-love", "would-like", "nice-to-have")
SEEDED_SEVERITIES = {"non-negotiable", "strong-preference"}
RESPONSE_TYPES = ("accept", "accept-with-reservations", "object", "opt-out")
ELICITATION_SIGNALS = ("complete", "deepen", "expand", "needs-more-info", "opt-out")
CONFIDENCE_LEVELS = ("high", "medium", "low")


def safe_string(value: Any) -> str:
    """Reduce an oracle value to text; objects yield their text/proposal/description."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "proposal", "description"):
            if value.get(key):
                return safe_string(value[key])
        return json.dumps(value, sort_keys=True)
    return str(value)


def string_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, dict)):
        value = [value]
    return tuple(text for text in (safe_string(item) for item in value) if text)


def normalize_token(value: Any) -> str:
    return safe_string(value).strip().lower().replace("_", "-").replace(" ", "-")


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    return None


def format_constraint(level: str, text: str) -> str:
    return f"[{level}] {text.strip()}"


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartyConstraint:
    """A persistent constraint or desire held by a party."""
    text: str
    type: str = "concern"  # concern | desire
    severity: str | None = None  # concerns
    intensity: str | None = None  # desires
    reason: str = ""
    flexibility: float = 1.0  # 0 = absolutely rigid
    anonymous: bool = False  # owner hidden from the other parties

    @property
    def level(self) -> str:
        return self.severity or self.intensity or "preference"

    @property
    def is_non_negotiable(self) -> bool:
        return self.type == "concern" and self.severity == "non-negotiable"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartyConstraint":
        flexibility = float(data.get("flexibility", 1.0))
        return cls(
            text=str(data["text"]),
            type=str(data.get("type", "concern")),
            severity=data.get("severity"),
            intensity=data.get("intensity"),
            reason=str(data.get("reason", "")),
            flexibility=min(1.0, max(0.0, flexibility)),
            anonymous=coerce_bool(data.get("anonymous")) is True,
        )


@dataclass
class Persona:
    id: str
    name: str
    constraints: List[PartyConstraint] = field(default_factory=list)
    flexibility: float = 0.5
    style: Dict[str, Any] = field(default_factory=dict)  # only read by the oracle

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Persona":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            constraints=[PartyConstraint.from_dict(c) for c in data.get("constraints", [])],
            flexibility=float(data.get("flexibility", 0.5)),
            style=dict(data.get("style") or {}),
        )

    def non_negotiables(self) -> List[PartyConstraint]:
        return [c for c in self.constraints if c.is_non_negotiable]

    def describe_constraints(self) -> List[str]:
        return [f"{c.text} [flex:{c.flexibility}, {c.level}]" for c in self.constraints]


@dataclass(frozen=True)
class Tag:
    text: str
    type: str = "concern"
    severity: str | None = None
    intensity: str | None = None
    quote: str = ""
    underlying: str = ""

    @property
    def level(self) -> str:
        return self.severity or self.intensity or "preference"

    @classmethod
    def from_payload(cls, data: Any) -> "Tag":
        if not isinstance(data, dict):
            return cls(text=safe_string(data))
        tag_type = normalize_token(data.get("type")) or "concern"
        return cls(
            text=safe_string(data.get("text")),
            type=tag_type if tag_type in {"concern", "desire"} else "concern",
            severity=normalize_token(data.get("severity")) or None,
            intensity=normalize_token(data.get("intensity")) or None,
            quote=safe_string(data.get("quote")),
            underlying=safe_string(data.get("underlying")),
        )


@dataclass
class Extraction:
    tags: List[Tag] = field(default_factory=list)
    message: str = ""
    signal: str = "needs-more-info"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Extraction":
        signal = normalize_token(payload.get("signal"))
        tags = [Tag.from_payload(item) for item in payload.get("tags") or []]
        return cls(
            tags=[tag for tag in tags if tag.text],
            message=safe_string(payload.get("message")),
            signal=signal if signal in ELICITATION_SIGNALS else "needs-more-info",
        )


@dataclass(frozen=True)
class Turn:
    role: str  # user | assistant
    content: str


# ---------------------------------------------------------------------------
# Phase outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecisionQuestion:
    category: str
    question: str
    has_conflict: bool


@dataclass(frozen=True)
class Coupling:
    categories: Tuple[str, ...]
    nature: str


@dataclass(frozen=True)
class ProblemStructure:
    questions: Tuple[DecisionQuestion, ...] = ()
    couplings: Tuple[Coupling, ...] = ()
    consensus_items: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProblemStructure":
        questions = []
        for item in payload.get("questions") or []:
            if not isinstance(item, dict):
                continue
            questions.append(DecisionQuestion(
                category=normalize_token(item.get("category")) or "what",
                question=safe_string(item.get("question")),
                has_conflict=bool(coerce_bool(item.get("hasConflict"))),
            ))
        couplings = []
        for item in payload.get("couplings") or []:
            if not isinstance(item, dict):
                continue
            couplings.append(Coupling(
                categories=tuple(normalize_token(c) for c in item.get("categories") or []),
                nature=safe_string(item.get("nature")),
            ))
        return cls(
            questions=tuple(questions),
            couplings=tuple(couplings),
            consensus_items=string_list(payload.get("consensusItems")),
        )

    @property
    def conflicts(self) -> List[DecisionQuestion]:
        return [q for q in self.questions if q.has_conflict]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "questions": [
                {"category": q.category, "question": q.question, "hasConflict": q.has_conflict}
                for q in self.questions
            ],
            "couplings": [{"categories": list(c.categories), "nature": c.nature} for c in self.couplings],
            "consensusItems": list(self.consensus_items),
        }


@dataclass(frozen=True)
class Proposal:
    question: str
    proposal: str
    rationale: str = ""
    addressed_concerns: Tuple[str, ...] = ()
    addressed_desires: Tuple[str, ...] = ()

    @property
    def addressed_count(self) -> int:
        return len(self.addressed_concerns) + len(self.addressed_desires)

    @classmethod
    def from_payload(cls, data: Any) -> "Proposal":
        if not isinstance(data, dict):
            return cls(question="", proposal=safe_string(data))
        return cls(
            question=safe_string(data.get("question")),
            proposal=safe_string(data.get("proposal")),
            rationale=safe_string(data.get("rationale")),
            addressed_concerns=string_list(data.get("addressedConcerns")),
            addressed_desires=string_list(data.get("addressedDesires")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "proposal": self.proposal,
            "rationale": self.rationale,
            "addressedConcerns": list(self.addressed_concerns),
            "addressedDesires": list(self.addressed_desires),
        }


@dataclass(frozen=True)
class Tension:
    description: str
    concerns_involved: Tuple[str, ...] = ()
    possible_resolutions: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, data: Any) -> "Tension":
        if not isinstance(data, dict):
            return cls(description=safe_string(data))
        involved = data.get("concernsInvolved", data.get("constraintsInvolved"))
        return cls(
            description=safe_string(data.get("description")),
            concerns_involved=string_list(involved),
            possible_resolutions=string_list(data.get("possibleResolutions")),
        )


@dataclass(frozen=True)
class Synthesis:
    proposals: Tuple[Proposal, ...] = ()
    tensions: Tuple[Tension, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Synthesis":
        tensions = payload.get("tensions")
        if tensions is None:
            tensions = payload.get("unresolvedTensions")
        proposals = tuple(Proposal.from_payload(p) for p in payload.get("proposals") or [])
        return cls(
            proposals=tuple(p for p in proposals if p.proposal),
            tensions=tuple(Tension.from_payload(t) for t in tensions or []),
        )


@dataclass(frozen=True)
class Contextualization:
    confidence: str
    summary: str = ""
    highlights: Tuple[str, ...] = ()
    concerns: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Contextualization":
        confidence = normalize_token(payload.get("confidence"))
        return cls(
            confidence=confidence if confidence in CONFIDENCE_LEVELS else "low",
            summary=safe_string(payload.get("summary")),
            highlights=string_list(payload.get("highlights")),
            concerns=string_list(payload.get("concerns")),
        )


@dataclass(frozen=True)
class ConstraintAnalysis:
    constraint: str
    satisfied: bool
    evidence: str = ""


@dataclass(frozen=True)
class Response:
    """One party's answer to the round's proposal. Superseded by the next round, never edited."""
    party_id: str
    type: str
    reasoning: str = ""
    non_negotiables_satisfied: Optional[bool] = None
    constraint_analysis: Tuple[ConstraintAnalysis, ...] = ()
    concerns: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, party_id: str, payload: Dict[str, Any]) -> "Response":
        response_type = normalize_token(payload.get("type"))
        if response_type not in RESPONSE_TYPES:
            raise ValueError(f"unknown response type: {payload.get('type')!r}")
        analysis = []
        for item in payload.get("constraintAnalysis") or []:
            if not isinstance(item, dict):
                continue
            satisfied = coerce_bool(item.get("satisfied"))
            if satisfied is None:
                continue
            analysis.append(ConstraintAnalysis(
                constraint=safe_string(item.get("constraint")),
                satisfied=satisfied,
                evidence=safe_string(item.get("evidence")),
            ))
        return cls(
            party_id=party_id,
            type=response_type,
            reasoning=safe_string(payload.get("reasoning")),
            non_negotiables_satisfied=coerce_bool(payload.get("nonNegotiablesSatisfied")),
            constraint_analysis=tuple(analysis),
            concerns=string_list(payload.get("concerns")),
            suggestions=string_list(payload.get("suggestions")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Shared negotiation record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Constraint:
    """A constraint in the shared set. The owner id is kept even when hidden."""
    text: str
    party_id: str
    anonymous: bool = False

    def visible_to(self, viewer_id: str | None) -> Dict[str, Any]:
        show_owner = not self.anonymous or viewer_id == self.party_id
        return {"text": self.text, "owner": self.party_id if show_owner else None}


@dataclass
class PartyState:
    persona: Persona
    transcript: List[Turn] = field(default_factory=list)
    extraction: Extraction | None = None
    elicitation_complete: bool = False
    opted_out: bool = False
    proposal: Proposal | None = None
    contextualization: Contextualization | None = None
    response: Response | None = None

    @property
    def id(self) -> str:
        return self.persona.id

    @property
    def name(self) -> str:
        return self.persona.name

    def tags(self) -> List[Tag]:
        return list(self.extraction.tags) if self.extraction else []

    def to_participant(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tags": [
                {"type": t.type, "text": t.text, "level": t.level, "underlying": t.underlying}
                for t in self.tags()
            ],
        }


@dataclass(frozen=True)
class RoundRecord:
    number: int
    structure: ProblemStructure
    synthesis: Synthesis
    responses: Mapping[str, Response]
    outcome: str  # accepted | objections | opt-outs
    proposal_index: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "responses", MappingProxyType(dict(self.responses)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "structure": self.structure.to_payload(),
            "synthesis": {
                "proposals": [p.to_payload() for p in self.synthesis.proposals],
                "tensions": [asdict(t) for t in self.synthesis.tensions],
            },
            "proposal_index": self.proposal_index,
            "responses": {pid: r.to_dict() for pid, r in self.responses.items()},
            "outcome": self.outcome,
        }


@dataclass
class NegotiationState:
    id: str
    outcome: str
    creator: str
    parties: List[PartyState] = field(default_factory=list)
    constraints: List[Constraint] = field(default_factory=list)
    when: str | None = None
    where: str | None = None
    status: str = "extracting"
    round_number: int = 0
    rounds: Tuple[RoundRecord, ...] = ()

    def party(self, party_id: str) -> PartyState | None:
        for party in self.parties:
            if party.id == party_id:
                return party
        return None

    def record_round(self, record: RoundRecord) -> None:
        if record.number != len(self.rounds) + 1:
            raise ValueError(f"round {record.number} out of order (have {len(self.rounds)})")
        self.rounds = self.rounds + (record,)

    @property
    def last_round(self) -> RoundRecord | None:
        return self.rounds[-1] if self.rounds else None

    def add_constraint(self, text: str, party_id: str, anonymous: bool = False) -> bool:
        text = text.strip()
        if not text:
            return False
        for existing in self.constraints:
            if existing.party_id == party_id and existing.text == text:
                return False
        self.constraints.append(Constraint(text=text, party_id=party_id, anonymous=anonymous))
        return True

    def seed_constraints(self, personas: Iterable[Persona]) -> int:
        """Copy every non-negotiable and strong-preference constraint into the shared set."""
        added = 0
        for persona in personas:
            for c in persona.constraints:
                if c.severity in SEEDED_SEVERITIES:
                    if self.add_constraint(format_constraint(c.severity, c.text), persona.id, anonymous=c.anonymous):
                        added += 1
        return added

    def absorb_extraction(self, party: PartyState) -> int:
        added = 0
        for tag in party.tags():
            if self.add_constraint(format_constraint(tag.level, tag.text), party.id):
                added += 1
        return added

    def constraints_for(self, viewer_id: str | None = None) -> List[Dict[str, Any]]:
        return [c.visible_to(viewer_id) for c in self.constraints]

    def to_payload(self, viewer_id: str | None = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "outcome": self.outcome,
            "creator": self.creator,
            "participants": [{"id": p.id, "name": p.name} for p in self.parties],
            "constraints": self.constraints_for(viewer_id),
            "when": self.when,
            "where": self.where,
        }

    @classmethod
    def from_personas(cls, negotiation_id: str, outcome: str, creator: str, personas: List[Persona]) -> "NegotiationState":
        state = cls(
            id=negotiation_id,
            outcome=outcome,
            creator=creator,
            parties=[PartyState(persona=p) for p in personas],
        )
        state.seed_constraints(personas)
        return state
