"""Round-based negotiation orchestrator."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from concord.audit import AuditLog
from concord.config import Config
from concord.convergence import Participation, converged, is_success
from concord.models.dispatch import NegotiationCancelled, ParseFailureError, QuotaExhaustedError
from concord.oracle import SemanticOracle
from concord.phases import (
    build_round,
    collect_response,
    contextualize,
    elicit_party,
    select_proposal,
    structure_problem,
    synthesize,
)
from concord.scenarios import Scenario
from concord.state import NegotiationState, Proposal, Response, RoundRecord
from concord.store import RunStore
from concord.validator import ConstraintValidation, validate_constraints

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("converged", "diverged", "failed", "cancelled")


@dataclass
class NegotiationResult:
    scenario_id: str
    status: str
    success: bool
    rounds: Tuple[RoundRecord, ...]
    participation: Participation
    constraints: ConstraintValidation
    final_proposals: List[Proposal] = field(default_factory=list)
    feedback: Dict[str, str] = field(default_factory=dict)
    transcripts: List[Dict[str, Any]] = field(default_factory=list)
    timing: Dict[str, float] = field(default_factory=dict)
    expected_convergence: bool = True
    run_id: str | None = None
    error: str | None = None

    @property
    def converged(self) -> bool:
        return self.status == "converged"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "scenario_id": self.scenario_id,
            "status": self.status,
            "success": self.success,
            "error": self.error,
            "convergence": {
                "converged": self.converged,
                "expected": self.expected_convergence,
                "rounds": len(self.rounds),
            },
            "participation": self.participation.to_dict(),
            "constraints": self.constraints.to_dict(),
            "history": {
                "rounds": [r.to_dict() for r in self.rounds],
                "final_proposals": [p.to_payload() for p in self.final_proposals],
                "feedback": dict(self.feedback),
                "transcripts": list(self.transcripts),
            },
            "timing": dict(self.timing),
        }


class NegotiationOrchestrator:
    """Drives elicitation and then the structure/synthesize/respond round loop.

    Parties are handled one at a time in every per-party phase; their
    oracle calls share one quota and interleaving them only adds waiting.
    """

    def __init__(
        self,
        oracle: SemanticOracle,
        config: Config,
        store: RunStore | None = None,
        max_rounds: int | None = None,
    ) -> None:
        self.oracle = oracle
        self.config = config
        self.store = store
        self.max_rounds = max_rounds if max_rounds is not None else config.max_rounds
        self.elicitation_max_turns = config.elicitation_max_turns
        self.timeout_seconds = config.run_timeout_seconds
        self.proposal_policy = config.proposal_policy

    async def run(self, scenario: Scenario, cancel: Optional[asyncio.Event] = None) -> NegotiationResult:
        cancel = cancel or asyncio.Event()
        run_id = None
        audit: AuditLog | None = None
        if self.store is not None:
            run_id = self.store.create_run(scenario.id, scenario.outcome, meta={"name": scenario.name})
            audit = AuditLog(self.store.run_dir(run_id) / "audit.jsonl", run_id=run_id)
            audit.log("run.start", {
                "scenario": scenario.id,
                "parties": [p.id for p in scenario.personas],
                "max_rounds": self.max_rounds,
                "timeout": self.timeout_seconds,
            })

        state = NegotiationState.from_personas(
            negotiation_id=run_id or scenario.id,
            outcome=scenario.outcome,
            creator=scenario.creator,
            personas=scenario.personas,
        )
        logger.info("Seeded %s critical constraints for %s", len(state.constraints), scenario.id)

        timed_out = False

        def _expire() -> None:
            nonlocal timed_out
            timed_out = True
            cancel.set()

        timer = asyncio.get_running_loop().call_later(self.timeout_seconds, _expire)
        timing: Dict[str, float] = {"elicitation": 0.0, "synthesis": 0.0, "contextualization": 0.0, "responses": 0.0}
        started = time.perf_counter()
        error: str | None = None
        try:
            await self._negotiate(state, timing, cancel, run_id, audit)
        except NegotiationCancelled:
            state.status = "cancelled"
            error = f"timed out after {self.timeout_seconds}s" if timed_out else "cancelled"
            logger.warning("Negotiation %s %s during round %s", scenario.id, error, state.round_number)
        except (ParseFailureError, QuotaExhaustedError) as exc:
            state.status = "failed"
            error = str(exc)
            logger.error("Negotiation %s failed: %s", scenario.id, exc)
        except Exception as exc:
            if self.store is not None and run_id:
                self.store.fail_run(run_id, str(exc))
            if audit:
                audit.log("run.failed", {"error": str(exc)})
            raise
        finally:
            timer.cancel()
        timing["total"] = time.perf_counter() - started

        result = self._build_result(scenario, state, timing, error, run_id)
        if self.store is not None and run_id:
            self.store.finalize_run(run_id, result.to_dict())
        if audit:
            audit.log("run.complete", {
                "status": result.status,
                "success": result.success,
                "rounds": len(result.rounds),
                "violated": result.constraints.violated,
                "error": error,
            })
        return result

    async def _negotiate(
        self,
        state: NegotiationState,
        timing: Dict[str, float],
        cancel: asyncio.Event,
        run_id: str | None,
        audit: AuditLog | None,
    ) -> None:
        state.status = "extracting"
        self._event(run_id, {"phase": "elicitation", "status": "start"})
        phase_start = time.perf_counter()
        for party in state.parties:
            turns = await elicit_party(self.oracle, state, party, max_turns=self.elicitation_max_turns, cancel=cancel)
            added = state.absorb_extraction(party)
            if audit:
                audit.log("elicitation.party", {"party": party.id, "turns": turns, "constraints_added": added})
        timing["elicitation"] += time.perf_counter() - phase_start
        self._event(run_id, {"phase": "elicitation", "status": "done", "constraints": len(state.constraints)})

        while state.round_number < self.max_rounds:
            state.round_number += 1
            number = state.round_number
            logger.info("Round %s/%s", number, self.max_rounds)

            phase_start = time.perf_counter()
            state.status = "structuring"
            structure = await structure_problem(self.oracle, state, cancel=cancel)
            state.status = "synthesizing"
            synthesis = await synthesize(self.oracle, state, structure, cancel=cancel)
            timing["synthesis"] += time.perf_counter() - phase_start

            index = select_proposal(synthesis, self.proposal_policy)
            responses: Dict[str, Response] = {}
            if index is None:
                logger.warning("Round %s produced no proposal (%s tensions)", number, len(synthesis.tensions))
            else:
                proposal = synthesis.proposals[index]
                phase_start = time.perf_counter()
                state.status = "contextualizing"
                for party in state.parties:
                    if not party.opted_out:
                        await contextualize(self.oracle, state, party, proposal, cancel=cancel)
                timing["contextualization"] += time.perf_counter() - phase_start

                phase_start = time.perf_counter()
                state.status = "responding"
                for party in state.parties:
                    if party.opted_out:
                        responses[party.id] = Response(party.id, "opt-out", reasoning="Opted out during elicitation")
                        continue
                    responses[party.id] = await collect_response(self.oracle, state, party, proposal, cancel=cancel)
                timing["responses"] += time.perf_counter() - phase_start

            record = build_round(number, structure, synthesis, responses, index)
            state.record_round(record)
            self._event(run_id, {"phase": "round", "status": "done", "round": number, "outcome": record.outcome})
            if audit:
                audit.log("round.complete", record.to_dict())

            state.status = "checking"
            if index is not None and converged(responses.values()):
                state.status = "converged"
                logger.info("Converged in round %s", number)
                return

        state.status = "diverged"
        logger.info("No convergence after %s rounds", self.max_rounds)

    def _event(self, run_id: str | None, event: Dict[str, Any]) -> None:
        if self.store is not None and run_id:
            self.store.append_event(run_id, event)

    def _build_result(
        self,
        scenario: Scenario,
        state: NegotiationState,
        timing: Dict[str, float],
        error: str | None,
        run_id: str | None,
    ) -> NegotiationResult:
        last = state.last_round
        participation = Participation.count(last.responses if last else None)
        validation = validate_constraints(scenario.personas, last)
        success = is_success(state.status == "converged", participation, len(validation.violated), scenario.success)
        transcripts = []
        for party in state.parties:
            transcripts.append({
                "party_id": party.id,
                "name": party.name,
                "turns": [asdict(turn) for turn in party.transcript],
                "tags": [asdict(tag) for tag in party.tags()],
                "complete": party.elicitation_complete,
                "opted_out": party.opted_out,
            })
        return NegotiationResult(
            scenario_id=scenario.id,
            status=state.status if state.status in TERMINAL_STATUSES else "failed",
            success=success,
            rounds=state.rounds,
            participation=participation,
            constraints=validation,
            final_proposals=list(last.synthesis.proposals) if last else [],
            feedback={pid: r.reasoning for pid, r in last.responses.items()} if last else {},
            transcripts=transcripts,
            timing={key: round(value, 3) for key, value in timing.items()},
            expected_convergence=scenario.expected_convergence,
            run_id=run_id,
            error=error,
        )
