from threading import Lock
from typing import Any, Dict

from loguru import logger
from pybreaker import CircuitBreaker, CircuitBreakerListener

from station_reconciler.config.settings import Settings
from station_reconciler.monitoring.metrics import MetricsCollector


def _state_name(state) -> str:
    return getattr(state, "name", str(state))


class MetricsCircuitBreakerListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state) -> None:
        logger.warning(
            f"Circuit Breaker '{cb.name}' state changed: "
            f"{_state_name(old_state)} -> {_state_name(new_state)}. "
            f"Failures: {cb.fail_counter}/{cb.fail_max}"
        )

        MetricsCollector.record_circuit_breaker_state(cb.name, _state_name(new_state))

    def failure(self, cb, exc) -> None:  # noqa: ARG002
        MetricsCollector.record_circuit_breaker_failure(cb.name)


class CircuitBreakerConfig:
    """One breaker per station, so a dead station cannot trip its neighbours."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()
        self._listener = MetricsCircuitBreakerListener()

    def get_telemetry_breaker(self, station_id: str) -> CircuitBreaker:
        with self._lock:
            if station_id not in self._breakers:
                self._breakers[station_id] = CircuitBreaker(
                    fail_max=self.settings.cb_telemetry_fail_max,
                    reset_timeout=self.settings.cb_telemetry_reset_timeout,
                    name=f"telemetry:{station_id}",
                    listeners=[self._listener],
                )
            return self._breakers[station_id]

    def get_breaker_stats(self) -> Dict[str, Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for name, breaker in self._breakers.items():
                stats[name] = {
                    "state": str(breaker.current_state),
                    "fail_counter": breaker.fail_counter,
                    "fail_max": breaker.fail_max,
                    "reset_timeout": breaker.reset_timeout,
                }
        return stats
