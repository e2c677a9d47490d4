import time
from typing import Any, Optional

import requests
from loguru import logger
from pybreaker import CircuitBreakerError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from station_reconciler.config.settings import Settings
from station_reconciler.core.circuit_breaker import CircuitBreakerConfig
from station_reconciler.monitoring.metrics import MetricsCollector
from station_reconciler.schemas import (
    Reachable,
    SlotObservation,
    TelemetryResult,
    Unreachable,
)


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_battery(entry: dict) -> SlotObservation:
    raw_slot = entry.get("slot_id")
    battery_id = entry.get("battery_id") or None

    abnormal = set()
    if str(entry.get("battery_abnormal", "0")) != "0":
        abnormal.add("battery")
    if str(entry.get("cable_abnormal", "0")) != "0":
        abnormal.add("cable")

    return SlotObservation(
        slot_id=_parse_int(raw_slot),
        battery_id=str(battery_id) if battery_id is not None else None,
        charge_level=_parse_int(entry.get("battery_capacity")) or 0,
        lock_engaged=str(entry.get("lock_status")) == "1",
        abnormal_flags=frozenset(abnormal),
        raw_slot_id=None if raw_slot is None else str(raw_slot),
    )


def parse_station_payload(data: Any) -> Reachable:
    """Turn a /v1/station/{id} body into observations.

    A body without a `batteries` list is malformed; an empty list is a
    station that reports no batteries.
    """
    if not isinstance(data, dict) or not isinstance(data.get("batteries"), list):
        raise ValueError("response has no batteries list")

    observations = []
    for entry in data["batteries"]:
        if not isinstance(entry, dict):
            raise ValueError(f"battery entry is not an object: {entry!r}")
        observations.append(parse_battery(entry))
    return Reachable(slots=tuple(observations))


class TelemetryClient:
    API_SERVICE = "telemetry"

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        breakers: Optional[CircuitBreakerConfig] = None,
    ):
        self._session = session or self._build_session(settings)
        self._timeout = settings.http_timeout_sec
        self._base = settings.telemetry_base
        self._auth = (settings.telemetry_api_key, "")
        self._breakers = breakers or CircuitBreakerConfig(settings)

    @staticmethod
    def _build_session(settings: Settings) -> requests.Session:
        session = requests.Session()
        retries = Retry(
            total=2,
            connect=2,
            read=1,
            backoff_factor=0.3,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(
            max_retries=retries, pool_maxsize=max(10, settings.fetch_concurrency)
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"User-Agent": "station-reconciler/1.0"})
        return session

    def _url(self, path: str) -> str:
        return f"{self._base.rstrip('/')}/{path.lstrip('/')}"

    def _get(self, path: str) -> Any:
        response = self._session.get(self._url(path), auth=self._auth, timeout=self._timeout)
        response.raise_for_status()
        return response.json()

    def fetch_station_state(self, station_id: str) -> TelemetryResult:
        """Fetch live slot state. Never raises: failures become Unreachable."""
        breaker = self._breakers.get_telemetry_breaker(station_id)

        # recorded inside the breaker: the call that trips it raises CircuitBreakerError
        @breaker
        def _fetch() -> Reachable:
            started = time.perf_counter()
            try:
                result = parse_station_payload(self._get(f"/v1/station/{station_id}"))
            except Exception:
                self._record(started, success=False)
                raise
            self._record(started, success=True)
            return result

        try:
            result = _fetch()
        except CircuitBreakerError:
            logger.warning(f"Telemetry breaker open for station {station_id}")
            return Unreachable(reason="circuit open")
        except requests.Timeout:
            logger.warning(f"Telemetry fetch timed out for station {station_id}")
            return Unreachable(reason="telemetry timeout")
        except requests.RequestException as e:
            logger.warning(f"Telemetry fetch failed for station {station_id}: {e}")
            return Unreachable(reason=f"telemetry request failed: {e}")
        except ValueError as e:
            logger.warning(f"Malformed telemetry for station {station_id}: {e}")
            return Unreachable(reason=f"malformed telemetry: {e}")

        logger.debug(
            f"Station {station_id} reported {len(result.slots)} batteries"
        )
        return result

    def _record(self, started: float, success: bool) -> None:
        MetricsCollector.record_external_api_call(
            self.API_SERVICE, "/v1/station", time.perf_counter() - started, success
        )

    def get_circuit_breaker_stats(self):
        return self._breakers.get_breaker_stats()
