"""Test the safety governor."""

import random
import threading
from unittest.mock import Mock

import pytest

from flasharb.config import SafetyConfig
from flasharb.core.safety import SafetyGovernor
from flasharb.core.types import FailureReason


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestCooldown:
    """Test the cooldown axis."""

    def setup_method(self):
        self.clock = FakeClock()
        self.transitions = []
        self.governor = SafetyGovernor(
            SafetyConfig(), clock=self.clock,
            on_transition=lambda name, details: self.transitions.append(name),
        )

    def test_three_failures_start_cooldown(self):
        self.governor.record_failure(FailureReason.INSUFFICIENT_MARGIN)
        self.governor.record_failure(FailureReason.INSUFFICIENT_MARGIN)
        assert not self.governor.is_in_cooldown()

        self.governor.record_failure(FailureReason.INSUFFICIENT_MARGIN)

        assert self.governor.is_in_cooldown()
        assert not self.governor.allows_settlement()
        assert self.governor.cooldown_remaining_s() == pytest.approx(300.0)
        assert "cooldown-started" in self.transitions

    def test_success_during_cooldown_does_not_clear_it(self):
        for _ in range(3):
            self.governor.record_failure()

        self.governor.record_success(1.0)

        assert self.governor.is_in_cooldown()
        assert self.governor.snapshot().consecutive_failures == 0

    def test_cooldown_expires_after_duration(self):
        for _ in range(3):
            self.governor.record_failure()

        self.clock.now += 299.0
        assert self.governor.is_in_cooldown()

        self.clock.now += 1.0
        assert not self.governor.is_in_cooldown()
        assert self.transitions.count("cooldown-ended") == 1

    def test_success_resets_failure_counter(self):
        self.governor.record_failure()
        self.governor.record_failure()
        self.governor.record_success()
        self.governor.record_failure()
        self.governor.record_failure()

        assert not self.governor.is_in_cooldown()

    def test_manual_clear(self):
        for _ in range(3):
            self.governor.record_failure()

        self.governor.clear_cooldown()

        assert not self.governor.is_in_cooldown()

    def test_concurrent_failures_are_all_counted(self):
        governor = SafetyGovernor(SafetyConfig(failure_threshold=1000), clock=self.clock)
        threads = [
            threading.Thread(target=lambda: [governor.record_failure() for _ in range(50)])
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert governor.snapshot().consecutive_failures == 400


class TestCongestion:
    """Test the congestion axis."""

    def setup_method(self):
        self.config = SafetyConfig(baseline_gas_price_gwei=5.0)
        self.governor = SafetyGovernor(self.config)

    def test_spike_flips_congestion_on_and_off(self):
        self.governor.update_gas_price(5.0 * 3)
        assert self.governor.is_congested()
        assert self.governor.gas_ratio() == pytest.approx(3.0)

        self.governor.update_gas_price(5.0 * 1)
        assert not self.governor.is_congested()

    def test_ratio_at_spike_factor_is_not_congested(self):
        self.governor.update_gas_price(5.0 * 2.5)
        assert not self.governor.is_congested()

    def test_invalid_samples_ignored(self):
        self.governor.update_gas_price(20.0)
        self.governor.update_gas_price(-1)
        self.governor.update_gas_price(None)
        self.governor.update_gas_price("abc")

        assert self.governor.is_congested()
        assert self.governor.snapshot().current_gas_price == 20.0

    def test_baseline_change_recomputes(self):
        self.governor.update_gas_price(15.0)
        assert self.governor.is_congested()

        self.governor.set_baseline_gas_price(10.0)
        assert not self.governor.is_congested()

    def test_congestion_does_not_block_settlement(self):
        self.governor.update_gas_price(100.0)
        assert self.governor.allows_settlement()


class TestCompetitiveBots:
    """Test competitive-bot detection and multiplier decay."""

    def test_scenario_d_seeded_decay(self):
        rng = Mock()
        rng.random.side_effect = [0.1, 0.9]
        governor = SafetyGovernor(SafetyConfig(), rng=rng)

        for _ in range(3):
            governor.record_failure(FailureReason.SETTLEMENT_REVERTED)

        assert governor.is_competitive_detected()
        assert governor.slippage_multiplier == pytest.approx(1.3)
        assert governor.apply_slippage(50.0) == pytest.approx(65.0)

        governor.record_success(0.5)  # 0.1 < 0.3: decays
        assert governor.slippage_multiplier == pytest.approx(1.2)

        governor.record_success(0.5)  # 0.9 >= 0.3: unchanged
        assert governor.slippage_multiplier == pytest.approx(1.2)

    def test_decay_with_seeded_random_is_reproducible(self):
        def run(seed):
            governor = SafetyGovernor(SafetyConfig(seed=seed))
            governor.record_failure(FailureReason.FRONTRUN_DETECTED)
            governor.record_failure(FailureReason.REVERTED_SLIPPAGE)
            multipliers = []
            for _ in range(20):
                governor.record_success()
                multipliers.append(governor.slippage_multiplier)
            return multipliers

        assert run(42) == run(42)

    def test_multiplier_decays_back_to_one_and_clears(self):
        rng = random.Random()
        rng.random = lambda: 0.0
        transitions = []
        governor = SafetyGovernor(SafetyConfig(), rng=rng,
                                  on_transition=lambda name, details: transitions.append(name))
        governor.record_failure(FailureReason.SETTLEMENT_REVERTED)
        governor.record_failure(FailureReason.SETTLEMENT_REVERTED)

        for _ in range(3):
            governor.record_success()

        assert governor.slippage_multiplier == 1.0
        assert not governor.is_competitive_detected()
        assert transitions.count("slippage-multiplier-decayed") == 3
        assert "competitive-cleared" in transitions

    def test_non_competitive_failure_breaks_the_streak(self):
        governor = SafetyGovernor(SafetyConfig())

        governor.record_failure(FailureReason.SETTLEMENT_REVERTED)
        governor.record_failure(FailureReason.INSUFFICIENT_MARGIN)
        governor.record_failure(FailureReason.SETTLEMENT_REVERTED)

        assert not governor.is_competitive_detected()
        assert governor.slippage_multiplier == 1.0

    def test_authorization_revert_is_not_competitive(self):
        governor = SafetyGovernor(SafetyConfig())

        governor.record_failure(FailureReason.REVERTED_AUTHORIZATION)
        governor.record_failure(FailureReason.REVERTED_AUTHORIZATION)

        assert not governor.is_competitive_detected()

    def test_callback_errors_are_absorbed(self):
        governor = SafetyGovernor(SafetyConfig(), on_transition=Mock(side_effect=RuntimeError("boom")))

        for _ in range(3):
            governor.record_failure(FailureReason.SETTLEMENT_REVERTED)

        assert governor.is_in_cooldown()

    def test_status_summary(self):
        governor = SafetyGovernor(SafetyConfig())
        governor.record_failure(FailureReason.SETTLEMENT_REVERTED)

        status = governor.get_status()

        assert status["cooldown"]["consecutive_failures"] == 1
        assert status["cooldown"]["active"] is False
        assert status["network_congestion"]["spike_factor"] == 2.5
        assert status["competitive_bots"]["failure_pattern"] == 1
