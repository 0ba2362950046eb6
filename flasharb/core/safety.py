"""Circuit breaker governing when settlements may start and how much slippage to allow."""

import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, replace
from loguru import logger

from flasharb.config import SafetyConfig
from .types import FailureReason

TransitionCallback = Callable[[str, Dict[str, Any]], None]


@dataclass
class SafetyState:
    """Shared safety state. Only ``SafetyGovernor`` writes it."""
    consecutive_failures: int = 0
    cooldown_until: Optional[float] = None  # governor clock seconds
    current_gas_price: float = 0.0
    baseline_gas_price: float = 1.0
    congested: bool = False
    competitive_slippage_multiplier: float = 1.0
    competitive_failures: int = 0
    competitive_detected: bool = False
    last_failure_reason: Optional[FailureReason] = None


class SafetyGovernor:
    """Advisory gates over cooldown, congestion and competitive-bot pressure.

    All methods are safe to call from coroutines and threads alike, and none
    of them raise: bad inputs are logged and ignored.
    """

    def __init__(self, config: SafetyConfig,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None,
                 on_transition: Optional[TransitionCallback] = None):
        self.config = config
        self._clock = clock
        self._rng = rng if rng is not None else random.Random(config.seed)
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self._state = SafetyState(
            current_gas_price=config.baseline_gas_price_gwei,
            baseline_gas_price=config.baseline_gas_price_gwei,
        )

    def set_transition_callback(self, callback: Optional[TransitionCallback]):
        self._on_transition = callback

    # Cooldown axis

    def record_failure(self, reason: Optional[FailureReason] = None):
        """Count a failed settlement and update cooldown and competitive detection."""
        transitions = []
        with self._lock:
            state = self._state
            now = self._clock()
            self._expire_cooldown(now, transitions)

            state.consecutive_failures += 1
            state.last_failure_reason = reason

            if reason is not None and reason.is_competitive:
                state.competitive_failures += 1
                if (state.competitive_failures >= self.config.competitive_failure_threshold
                        and not state.competitive_detected):
                    state.competitive_detected = True
                    state.competitive_slippage_multiplier = self.config.competitive_slippage_multiplier
                    transitions.append(("competitive-detected", {
                        "multiplier": state.competitive_slippage_multiplier,
                        "competitive_failures": state.competitive_failures,
                    }))
            else:
                state.competitive_failures = 0

            if (state.consecutive_failures >= self.config.failure_threshold
                    and state.cooldown_until is None):
                state.cooldown_until = now + self.config.cooldown_s
                transitions.append(("cooldown-started", {
                    "consecutive_failures": state.consecutive_failures,
                    "cooldown_s": self.config.cooldown_s,
                }))

            reason_text = reason.value if reason else "unspecified"
            failures = state.consecutive_failures

        logger.warning(f"Settlement failure recorded ({reason_text}), consecutive failures: {failures}")
        self._emit(transitions)

    def record_success(self, profit: float = 0.0):
        """Reset failure counters. An active cooldown keeps running until it expires."""
        transitions = []
        with self._lock:
            state = self._state
            self._expire_cooldown(self._clock(), transitions)
            state.consecutive_failures = 0
            state.competitive_failures = 0
            state.last_failure_reason = None

            if state.competitive_detected and self._rng.random() < self.config.multiplier_decay_probability:
                previous = state.competitive_slippage_multiplier
                decayed = round(previous - self.config.multiplier_decay_step, 10)
                state.competitive_slippage_multiplier = max(1.0, decayed)
                transitions.append(("slippage-multiplier-decayed", {
                    "previous": previous,
                    "multiplier": state.competitive_slippage_multiplier,
                }))
                if state.competitive_slippage_multiplier <= 1.0:
                    state.competitive_detected = False
                    transitions.append(("competitive-cleared", {"multiplier": 1.0}))

        logger.debug(f"Settlement success recorded, profit {profit:.6f}")
        self._emit(transitions)

    def is_in_cooldown(self) -> bool:
        """Check cooldown, expiring it once its duration has elapsed."""
        transitions = []
        with self._lock:
            self._expire_cooldown(self._clock(), transitions)
            active = self._state.cooldown_until is not None
        self._emit(transitions)
        return active

    def cooldown_remaining_s(self) -> float:
        with self._lock:
            if self._state.cooldown_until is None:
                return 0.0
            return max(0.0, self._state.cooldown_until - self._clock())

    def clear_cooldown(self):
        """Manually end an active cooldown. Failure counters are kept."""
        transitions = []
        with self._lock:
            if self._state.cooldown_until is not None:
                self._state.cooldown_until = None
                transitions.append(("cooldown-ended", {"manual": True}))
        self._emit(transitions)

    def allows_settlement(self) -> bool:
        """Whether a new settlement may start now."""
        return not self.is_in_cooldown()

    # Congestion axis

    def update_gas_price(self, gas_price_gwei: float):
        """Record a gas price sample and recompute the congestion flag."""
        try:
            price = float(gas_price_gwei)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid gas price sample: {gas_price_gwei!r}")
            return
        if price <= 0 or price != price:
            logger.warning(f"Ignoring non-positive gas price sample: {gas_price_gwei!r}")
            return

        transitions = []
        with self._lock:
            state = self._state
            state.current_gas_price = price
            ratio = price / state.baseline_gas_price
            congested = ratio > self.config.gas_spike_factor
            if congested != state.congested:
                state.congested = congested
                event = "congestion-started" if congested else "congestion-ended"
                transitions.append((event, {"gas_price_gwei": price, "ratio": round(ratio, 4)}))

        self._emit(transitions)

    def set_baseline_gas_price(self, gas_price_gwei: float):
        if gas_price_gwei is None or gas_price_gwei <= 0:
            logger.warning(f"Ignoring invalid baseline gas price: {gas_price_gwei!r}")
            return
        with self._lock:
            self._state.baseline_gas_price = float(gas_price_gwei)
        self.update_gas_price(self._state.current_gas_price)

    def is_congested(self) -> bool:
        with self._lock:
            return self._state.congested

    def gas_ratio(self) -> float:
        with self._lock:
            return self._state.current_gas_price / self._state.baseline_gas_price

    # Competitive-bot axis

    @property
    def slippage_multiplier(self) -> float:
        with self._lock:
            return self._state.competitive_slippage_multiplier

    def apply_slippage(self, base_slippage_bps: float) -> float:
        """Scale a base slippage tolerance by the competitive multiplier."""
        return base_slippage_bps * self.slippage_multiplier

    def is_competitive_detected(self) -> bool:
        with self._lock:
            return self._state.competitive_detected

    # Reporting

    def snapshot(self) -> SafetyState:
        """Copy of the current state for read-only use."""
        transitions = []
        with self._lock:
            self._expire_cooldown(self._clock(), transitions)
            state = replace(self._state)
        self._emit(transitions)
        return state

    def get_status(self) -> Dict[str, Any]:
        """Get safety status summary."""
        state = self.snapshot()
        remaining = self.cooldown_remaining_s()
        return {
            "cooldown": {
                "active": state.cooldown_until is not None,
                "remaining_s": round(remaining, 1),
                "consecutive_failures": state.consecutive_failures,
                "threshold": self.config.failure_threshold,
            },
            "network_congestion": {
                "congested": state.congested,
                "current_gas_price_gwei": state.current_gas_price,
                "baseline_gas_price_gwei": state.baseline_gas_price,
                "spike_factor": self.config.gas_spike_factor,
            },
            "competitive_bots": {
                "detected": state.competitive_detected,
                "slippage_multiplier": state.competitive_slippage_multiplier,
                "failure_pattern": state.competitive_failures,
            },
        }

    def _expire_cooldown(self, now: float, transitions: List[Tuple[str, Dict[str, Any]]]):
        # Caller holds the lock.
        until = self._state.cooldown_until
        if until is not None and now >= until:
            self._state.cooldown_until = None
            transitions.append(("cooldown-ended", {
                "consecutive_failures": self._state.consecutive_failures,
            }))

    def _emit(self, transitions: List[Tuple[str, Dict[str, Any]]]):
        for event, details in transitions:
            logger.info(f"🛡️ Safety transition: {event} {details}")
            if self._on_transition is None:
                continue
            try:
                self._on_transition(event, details)
            except Exception as e:
                logger.error(f"Safety transition callback failed for {event}: {e}")
