"""Tests for the adaptive delay controller."""

import unittest

from opslog.sources.ratelimiter import PAGE, THREAD, DelayController, Outcome


class TestDelayController(unittest.TestCase):
    """Test cases for DelayController."""

    def setUp(self) -> None:
        self.controller = DelayController(base_delays={PAGE: 0.5, THREAD: 0.3}, step=0.5, max_delay=5.0)

    def test_starts_at_base(self) -> None:
        self.assertEqual(self.controller.current_delay(PAGE), 0.5)
        self.assertEqual(self.controller.current_delay(THREAD), 0.3)
        self.assertEqual(self.controller.hits, 0)

    def test_rate_limit_scales_up(self) -> None:
        self.controller.on_result(THREAD, Outcome.RATE_LIMITED)
        self.assertAlmostEqual(self.controller.current_delay(THREAD), 0.3 * 1.5)
        self.controller.on_result(THREAD, Outcome.RATE_LIMITED)
        self.assertAlmostEqual(self.controller.current_delay(THREAD), 0.3 * 2.0)
        self.assertEqual(self.controller.hits, 2)
        self.assertEqual(self.controller.total_hits, 2)
        # the other kind keeps its base delay
        self.assertEqual(self.controller.current_delay(PAGE), 0.5)

    def test_success_decays_then_restores(self) -> None:
        self.controller.on_result(THREAD, Outcome.RATE_LIMITED)
        self.controller.on_result(THREAD, Outcome.RATE_LIMITED)
        self.controller.on_result(THREAD, Outcome.SUCCESS)
        self.assertEqual(self.controller.hits, 1)
        self.assertAlmostEqual(self.controller.current_delay(THREAD), 0.3 * 1.5)
        self.controller.on_result(THREAD, Outcome.SUCCESS)
        self.assertEqual(self.controller.hits, 0)
        self.assertEqual(self.controller.current_delay(THREAD), 0.3)
        self.assertEqual(self.controller.total_hits, 2)

    def test_delay_is_capped(self) -> None:
        for _ in range(50):
            self.controller.on_result(PAGE, Outcome.RATE_LIMITED)
        self.assertEqual(self.controller.current_delay(PAGE), 5.0)

    def test_success_without_hits_is_noop(self) -> None:
        self.controller.on_result(PAGE, Outcome.SUCCESS)
        self.assertEqual(self.controller.hits, 0)
        self.assertEqual(self.controller.current_delay(PAGE), 0.5)


if __name__ == "__main__":
    unittest.main()
