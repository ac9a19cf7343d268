"""Tests for concord.convergence module."""
import unittest

from concord.convergence import Participation, SuccessCriteria, converged, is_success
from concord.state import Response


def responses(*types):
    return {f"p{i}": Response(f"p{i}", t) for i, t in enumerate(types)}


class ConvergenceTests(unittest.TestCase):
    def test_only_objections_block(self):
        self.assertTrue(converged(responses("accept", "accept-with-reservations", "opt-out").values()))
        self.assertFalse(converged(responses("accept", "object").values()))
        self.assertTrue(converged([]))

    def test_adding_objection_never_creates_convergence(self):
        base = responses("accept", "accept-with-reservations")
        self.assertTrue(converged(base.values()))
        base["extra"] = Response("extra", "object")
        self.assertFalse(converged(base.values()))


class ParticipationTests(unittest.TestCase):
    def test_counts_and_rate(self):
        tally = Participation.count(responses("accept", "accept", "accept-with-reservations", "object", "opt-out"))
        self.assertEqual((tally.acceptances, tally.reservations, tally.objections, tally.opt_outs), (2, 1, 1, 1))
        self.assertEqual(tally.total, 5)
        self.assertAlmostEqual(tally.acceptance_rate, 0.6)
        self.assertAlmostEqual(tally.to_dict()["acceptance_rate"], 0.6)

    def test_empty_round(self):
        tally = Participation.count(None)
        self.assertEqual(tally.total, 0)
        self.assertEqual(tally.acceptance_rate, 0.0)


class SuccessTests(unittest.TestCase):
    def setUp(self):
        self.criteria = SuccessCriteria(min_acceptance_rate=0.8, max_opt_outs=1)
        self.good = Participation(acceptances=4, reservations=1)

    def test_all_conditions_hold(self):
        self.assertTrue(is_success(True, self.good, 0, self.criteria))

    def test_each_condition_is_independent(self):
        self.assertFalse(is_success(False, self.good, 0, self.criteria))
        self.assertFalse(is_success(True, Participation(acceptances=3, objections=2), 0, self.criteria))
        self.assertFalse(is_success(True, Participation(acceptances=8, opt_outs=2), 0, self.criteria))
        self.assertFalse(is_success(True, self.good, 1, self.criteria))

    def test_criteria_defaults(self):
        defaults = SuccessCriteria(min_acceptance_rate=0.5, max_opt_outs=0)
        merged = SuccessCriteria.from_dict({"max_opt_outs": 2}, defaults)
        self.assertEqual(merged.min_acceptance_rate, 0.5)
        self.assertEqual(merged.max_opt_outs, 2)
        self.assertEqual(SuccessCriteria.from_dict(None).min_acceptance_rate, 0.8)


if __name__ == "__main__":
    unittest.main()
