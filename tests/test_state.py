"""Tests for concord.state module."""
import unittest

from concord.state import (
    Extraction,
    NegotiationState,
    PartyConstraint,
    Persona,
    ProblemStructure,
    Response,
    RoundRecord,
    Synthesis,
    Tag,
    safe_string,
)


def persona(pid, name, constraints):
    return Persona(id=pid, name=name, constraints=[PartyConstraint.from_dict(c) for c in constraints])


SARAH = persona("sarah", "Sarah", [
    {"text": "Vegetarian food options required", "severity": "non-negotiable", "flexibility": 0},
    {"text": "Transit accessible location", "severity": "strong-preference", "flexibility": 0.1},
    {"text": "Afternoon timing", "type": "desire", "intensity": "would-like", "flexibility": 0.6},
])
MIKE = persona("mike", "Mike", [
    {"text": "Under $30 per person", "severity": "preference", "flexibility": 0.4},
])


class SeedingTests(unittest.TestCase):
    def test_seeds_hard_constraints_only(self):
        state = NegotiationState.from_personas("n1", "Dinner", "sarah", [SARAH, MIKE])
        texts = [c.text for c in state.constraints]
        self.assertEqual(texts, [
            "[non-negotiable] Vegetarian food options required",
            "[strong-preference] Transit accessible location",
        ])
        self.assertTrue(all(c.party_id == "sarah" for c in state.constraints))

    def test_reseeding_is_idempotent(self):
        state = NegotiationState.from_personas("n1", "Dinner", "sarah", [SARAH, MIKE])
        before = list(state.constraints)
        added = state.seed_constraints([SARAH])
        self.assertEqual(added, 0)
        self.assertEqual(state.constraints, before)

    def test_absorb_extraction_dedupes_against_seeds(self):
        state = NegotiationState.from_personas("n1", "Dinner", "sarah", [SARAH])
        party = state.party("sarah")
        party.extraction = Extraction(tags=[
            Tag(text="Vegetarian food options required", severity="non-negotiable"),
            Tag(text="Wants a quiet place", type="desire", intensity="would-love"),
        ])
        self.assertEqual(state.absorb_extraction(party), 1)
        self.assertEqual(state.constraints[-1].text, "[would-love] Wants a quiet place")

    def test_anonymous_constraint_hides_owner_from_others(self):
        state = NegotiationState.from_personas("n1", "Dinner", "sarah", [SARAH, MIKE])
        state.add_constraint("No shellfish", "mike", anonymous=True)
        seen_by_sarah = state.constraints_for("sarah")[-1]
        seen_by_mike = state.constraints_for("mike")[-1]
        self.assertIsNone(seen_by_sarah["owner"])
        self.assertEqual(seen_by_mike["owner"], "mike")
        self.assertEqual(state.constraints[-1].party_id, "mike")

    def test_seeding_keeps_constraint_anonymous(self):
        alex = persona("alex", "Alex", [
            {"text": "Avoid lots of stairs", "severity": "strong-preference", "anonymous": True},
        ])
        state = NegotiationState.from_personas("n1", "Hike", "sarah", [SARAH, alex])
        seeded = state.constraints[-1]
        self.assertTrue(seeded.anonymous)
        self.assertEqual(seeded.party_id, "alex")
        self.assertIsNone(state.constraints_for("sarah")[-1]["owner"])
        self.assertEqual(state.constraints_for("alex")[-1]["owner"], "alex")
        self.assertFalse(state.constraints[0].anonymous)


class RoundHistoryTests(unittest.TestCase):
    def _round(self, number):
        return RoundRecord(
            number=number,
            structure=ProblemStructure(),
            synthesis=Synthesis(),
            responses={"sarah": Response("sarah", "accept")},
            outcome="accepted",
            proposal_index=None,
        )

    def test_history_is_append_only(self):
        state = NegotiationState.from_personas("n1", "Dinner", "sarah", [SARAH])
        state.record_round(self._round(1))
        state.record_round(self._round(2))
        self.assertEqual([r.number for r in state.rounds], [1, 2])
        self.assertIsInstance(state.rounds, tuple)
        with self.assertRaises(ValueError):
            state.record_round(self._round(2))

    def test_round_record_is_immutable(self):
        record = self._round(1)
        with self.assertRaises(TypeError):
            record.responses["mike"] = Response("mike", "object")
        with self.assertRaises(AttributeError):
            record.outcome = "objections"
        self.assertEqual(record.to_dict()["responses"]["sarah"]["type"], "accept")


class PayloadCoercionTests(unittest.TestCase):
    def test_safe_string(self):
        self.assertEqual(safe_string({"text": "a"}), "a")
        self.assertEqual(safe_string({"proposal": "b"}), "b")
        self.assertEqual(safe_string(None), "")
        self.assertEqual(safe_string(3), "3")

    def test_response_from_payload(self):
        response = Response.from_payload("sarah", {
            "type": "Accept With Reservations",
            "reasoning": "ok",
            "nonNegotiablesSatisfied": "true",
            "constraintAnalysis": [
                {"constraint": "Vegetarian", "satisfied": True, "evidence": "veg menu"},
                {"constraint": "junk", "satisfied": "maybe"},
            ],
            "concerns": ["price", {"text": "noise"}],
        })
        self.assertEqual(response.type, "accept-with-reservations")
        self.assertTrue(response.non_negotiables_satisfied)
        self.assertEqual(len(response.constraint_analysis), 1)
        self.assertEqual(response.concerns, ("price", "noise"))

    def test_response_rejects_unknown_type(self):
        with self.assertRaises(ValueError):
            Response.from_payload("sarah", {"type": "maybe", "reasoning": ""})

    def test_synthesis_accepts_either_tension_key(self):
        a = Synthesis.from_payload({"proposals": [], "tensions": [{"description": "x", "concernsInvolved": ["a"]}]})
        b = Synthesis.from_payload({"proposals": [], "unresolvedTensions": [{"description": "x", "constraintsInvolved": ["a"]}]})
        self.assertEqual(a.tensions, b.tensions)
        self.assertEqual(a.tensions[0].concerns_involved, ("a",))

    def test_extraction_signal_normalized(self):
        self.assertEqual(Extraction.from_payload({"tags": [], "message": "", "signal": "COMPLETE"}).signal, "complete")
        self.assertEqual(Extraction.from_payload({"tags": [], "message": "", "signal": "???"}).signal, "needs-more-info")


if __name__ == "__main__":
    unittest.main()
