"""Tests for concord.models.quota module."""
import unittest

from concord.models.quota import (
    QuotaTracker,
    classify_limit,
    default_tracker,
    format_wait,
    parse_duration,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class DurationTests(unittest.TestCase):
    def test_parse_duration(self):
        self.assertAlmostEqual(parse_duration("2h26m52.8s"), (2 * 3600 + 26 * 60 + 52.8) * 1000, delta=0.01)
        self.assertAlmostEqual(parse_duration("50.06s"), 50060, delta=0.01)
        self.assertEqual(parse_duration("420ms"), 420)
        self.assertEqual(parse_duration("1m"), 60000)
        self.assertEqual(parse_duration(""), 0)

    def test_format_wait(self):
        self.assertEqual(format_wait(45000), "45s")
        self.assertEqual(format_wait(185000), "3m 5s")
        self.assertEqual(format_wait(120000), "2m")
        self.assertEqual(format_wait((2 * 3600 + 26 * 60) * 1000), "2h 26m")

    def test_classify_limit(self):
        self.assertEqual(classify_limit("Limit 500000, Used 499000 on tokens per day (TPD)"), "daily")
        self.assertEqual(classify_limit("Rate limit reached on requests per minute (RPM)"), "requests")
        self.assertEqual(classify_limit("on tokens per minute (TPM): Limit 6000"), "tokens")


class QuotaTrackerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.tracker = QuotaTracker(clock=self.clock)

    def test_unknown_key_never_waits(self):
        self.assertEqual(self.tracker.get_wait_ms("m"), 0)

    def test_no_wait_when_budget_available(self):
        self.tracker.update_from_success("m", {
            "x-ratelimit-limit-tokens": "6000",
            "x-ratelimit-remaining-tokens": "5000",
            "x-ratelimit-reset-tokens": "30s",
            "x-ratelimit-limit-requests": "14400",
            "x-ratelimit-remaining-requests": "14000",
            "x-ratelimit-reset-requests": "1m",
        })
        self.assertEqual(self.tracker.get_wait_ms("m"), 0)

    def test_no_wait_when_reset_has_passed(self):
        self.tracker.update_from_success("m", {
            "x-ratelimit-remaining-tokens": "0",
            "x-ratelimit-reset-tokens": "2s",
        })
        self.assertGreater(self.tracker.get_wait_ms("m"), 0)
        self.clock.now += 3
        self.assertEqual(self.tracker.get_wait_ms("m"), 0)

    def test_success_overwrites_state(self):
        state = self.tracker.update_from_success("m", {
            "X-RateLimit-Limit-Tokens": "6000",
            "X-RateLimit-Remaining-Tokens": "1200",
            "X-RateLimit-Reset-Tokens": "7.5s",
        })
        self.assertEqual(state.limit_tokens, 6000)
        self.assertEqual(state.remaining_tokens, 1200)
        self.assertAlmostEqual(state.reset_tokens_at, 1007.5)
        self.assertAlmostEqual(state.reset_tokens_daily_at, 1000 + 24 * 3600)

    def test_failure_with_retry_hint_sets_token_reset(self):
        state = self.tracker.update_from_failure(
            "m", "Rate limit reached on tokens per minute (TPM). Please try again in 5s."
        )
        self.assertEqual(state.remaining_tokens, 0)
        self.assertAlmostEqual(state.reset_tokens_at, 1005)
        self.assertAlmostEqual(self.tracker.get_wait_ms("m"), 5000)

    def test_daily_failure_zeroes_daily_bucket(self):
        self.tracker.update_from_success("m", {
            "x-ratelimit-remaining-tokens": "6000",
            "x-ratelimit-remaining-requests": "100",
        })
        state = self.tracker.update_from_failure(
            "m", "Limit 500000 on tokens per day (TPD). Please try again in 2h26m52.8s."
        )
        self.assertEqual(state.remaining_tokens_daily, 0)
        self.assertEqual(state.remaining_tokens, 6000)
        self.assertAlmostEqual(self.tracker.get_wait_ms("m"), (2 * 3600 + 26 * 60 + 52.8) * 1000, delta=1)

    def test_retry_after_header_applies_without_hint(self):
        self.tracker.update_from_failure("m", "requests per minute (RPM) exceeded", {"Retry-After": "12"})
        state = self.tracker.get("m")
        self.assertEqual(state.remaining_requests, 0)
        self.assertAlmostEqual(state.reset_requests_at, 1012)

    def test_get_wait_is_maximum_of_active_waits(self):
        self.tracker.update_from_failure("m", "tokens per minute: try again in 3s")
        self.tracker.update_from_failure("m", "requests per day (RPD): try again in 40s")
        self.assertAlmostEqual(self.tracker.get_wait_ms("m"), 40000)

    def test_reserve_and_refresh(self):
        self.tracker.update_from_success("m", {
            "x-ratelimit-limit-tokens": "6000",
            "x-ratelimit-remaining-tokens": "1000",
            "x-ratelimit-remaining-requests": "5",
        })
        self.tracker.reserve("m", 800)
        state = self.tracker.get("m")
        self.assertEqual(state.remaining_tokens, 200)
        self.assertEqual(state.remaining_requests, 4)
        self.tracker.reserve("m", 800)
        self.assertEqual(state.remaining_tokens, 0)
        self.tracker.refresh_tokens("m")
        self.assertEqual(state.remaining_tokens, 6000)

    def test_state_is_per_key(self):
        self.tracker.update_from_failure("a", "try again in 9s")
        self.assertGreater(self.tracker.get_wait_ms("a"), 0)
        self.assertEqual(self.tracker.get_wait_ms("b"), 0)
        self.assertIs(self.tracker.lock("a"), self.tracker.lock("a"))
        self.assertIsNot(self.tracker.lock("a"), self.tracker.lock("b"))

    def test_snapshot(self):
        self.tracker.update_from_success("m", {"x-ratelimit-remaining-tokens": "10"})
        snapshot = self.tracker.snapshot()
        self.assertEqual(snapshot["m"]["remaining_tokens"], 10)

    def test_default_tracker_is_shared(self):
        self.assertIs(default_tracker(), default_tracker())


class QuotaInitializeTests(unittest.IsolatedAsyncioTestCase):
    async def test_initialize_probes_once(self):
        tracker = QuotaTracker(clock=FakeClock())
        calls = []

        class Probe:
            headers = {"x-ratelimit-remaining-tokens": "5999", "x-ratelimit-limit-tokens": "6000"}
            rate_limited = False

        async def probe():
            calls.append(1)
            return Probe()

        await tracker.initialize("m", probe)
        await tracker.initialize("m", probe)
        self.assertEqual(len(calls), 1)
        self.assertTrue(tracker.is_initialized("m"))
        self.assertEqual(tracker.get("m").remaining_tokens, 5999)

    async def test_initialize_survives_probe_error(self):
        tracker = QuotaTracker()

        async def probe():
            raise RuntimeError("network down")

        with self.assertLogs("concord.models.quota", level="WARNING"):
            await tracker.initialize("m", probe)
        self.assertTrue(tracker.is_initialized("m"))
        self.assertIsNone(tracker.get("m"))


if __name__ == "__main__":
    unittest.main()
