"""Non-negotiable constraint validation against each party's own final response."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from concord.state import Persona, Response, RoundRecord

logger = logging.getLogger(__name__)

MATCH_PREFIX = 15
_LEVEL_PREFIX = re.compile(r"^\s*\[[^\]]*\]\s*")


@dataclass
class ConstraintValidation:
    total_non_negotiable: int = 0
    satisfied: List[str] = field(default_factory=list)
    violated: List[str] = field(default_factory=list)

    @property
    def satisfied_count(self) -> int:
        return len(self.satisfied)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_non_negotiable": self.total_non_negotiable,
            "satisfied_non_negotiable": self.satisfied_count,
            "violated_constraints": list(self.violated),
            "satisfied_constraints": list(self.satisfied),
        }


def _normalize(text: str) -> str:
    return _LEVEL_PREFIX.sub("", text or "").strip().lower()


def texts_overlap(constraint: str, analyzed: str) -> bool:
    """Best-effort match: either text contains the other's leading characters."""
    a = _normalize(constraint)
    b = _normalize(analyzed)
    if not a or not b:
        return False
    return b[:MATCH_PREFIX] in a or a[:MATCH_PREFIX] in b


def _keywords(text: str) -> List[str]:
    return [word for word in _normalize(text).split() if len(word) > 4]


def is_satisfied(constraint_text: str, response: Response | None) -> bool:
    if response is None:
        return False

    if response.non_negotiables_satisfied is not None:
        return response.non_negotiables_satisfied

    for analysis in response.constraint_analysis:
        if texts_overlap(constraint_text, analysis.constraint):
            return analysis.satisfied

    if response.type == "object":
        return False
    if response.type == "accept-with-reservations":
        concerns = " ".join(response.concerns).lower()
        reasoning = response.reasoning.lower()
        return not any(kw in concerns or kw in reasoning for kw in _keywords(constraint_text))
    return response.type == "accept"


def validate_constraints(personas: List[Persona], last_round: RoundRecord | None) -> ConstraintValidation:
    """Classify every party's non-negotiables as satisfied or violated."""
    result = ConstraintValidation()
    responses: Mapping[str, Response] = last_round.responses if last_round else {}
    for persona in personas:
        for constraint in persona.non_negotiables():
            result.total_non_negotiable += 1
            label = f"{persona.name}: {constraint.text}"
            if is_satisfied(constraint.text, responses.get(persona.id)):
                result.satisfied.append(label)
            else:
                result.violated.append(label)
    if result.violated:
        logger.info("%s of %s non-negotiables violated", len(result.violated), result.total_non_negotiable)
    return result
