"""Round convergence and scenario success."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Mapping

from concord.state import Response


def converged(responses: Iterable[Response]) -> bool:
    """A round converges when nobody objects. Reservations and opt-outs do not block."""
    return all(r.type != "object" for r in responses)


@dataclass
class Participation:
    acceptances: int = 0
    reservations: int = 0
    objections: int = 0
    opt_outs: int = 0

    @property
    def total(self) -> int:
        return self.acceptances + self.reservations + self.objections + self.opt_outs

    @property
    def acceptance_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return (self.acceptances + self.reservations) / self.total

    @classmethod
    def count(cls, responses: Mapping[str, Response] | None) -> "Participation":
        tally = cls()
        for response in (responses or {}).values():
            if response.type == "accept":
                tally.acceptances += 1
            elif response.type == "accept-with-reservations":
                tally.reservations += 1
            elif response.type == "object":
                tally.objections += 1
            elif response.type == "opt-out":
                tally.opt_outs += 1
        return tally

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["acceptance_rate"] = self.acceptance_rate
        return data


@dataclass
class SuccessCriteria:
    min_acceptance_rate: float = 0.8
    max_opt_outs: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None, defaults: "SuccessCriteria | None" = None) -> "SuccessCriteria":
        base = defaults or cls()
        data = data or {}
        return cls(
            min_acceptance_rate=float(data.get("min_acceptance_rate", base.min_acceptance_rate)),
            max_opt_outs=int(data.get("max_opt_outs", base.max_opt_outs)),
        )


def is_success(
    is_converged: bool,
    participation: Participation,
    violated_count: int,
    criteria: SuccessCriteria,
) -> bool:
    """All four conditions must hold at once."""
    return (
        is_converged
        and participation.acceptance_rate >= criteria.min_acceptance_rate
        and participation.opt_outs <= criteria.max_opt_outs
        and violated_count == 0
    )
