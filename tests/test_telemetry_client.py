from unittest.mock import Mock

import pytest
import requests

from station_reconciler.clients.telemetry import (
    TelemetryClient,
    parse_battery,
    parse_station_payload,
)
from station_reconciler.monitoring.metrics import MetricsCollector
from station_reconciler.schemas import Reachable, Unreachable


def _response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def http():
    return Mock(spec=requests.Session)


@pytest.fixture
def client(settings, http):
    return TelemetryClient(settings, session=http)


def test_parse_battery_fields():
    obs = parse_battery(
        {
            "slot_id": "3",
            "battery_id": "DTA12345",
            "battery_capacity": "85",
            "lock_status": "1",
            "battery_abnormal": "0",
            "cable_abnormal": "1",
        }
    )

    assert obs.slot_id == 3
    assert obs.battery_id == "DTA12345"
    assert obs.charge_level == 85
    assert obs.lock_engaged is True
    assert obs.abnormal_flags == frozenset({"cable"})


def test_parse_battery_tolerates_garbage_slot():
    obs = parse_battery({"slot_id": "A", "battery_id": "B1"})

    assert obs.slot_id is None
    assert obs.raw_slot_id == "A"
    assert obs.charge_level == 0
    assert obs.lock_engaged is False


def test_empty_battery_list_is_reachable():
    assert parse_station_payload({"batteries": []}) == Reachable(slots=())


@pytest.mark.parametrize("payload", [None, [], {"status": "ok"}, {"batteries": ["x"]}])
def test_malformed_payload_rejected(payload):
    with pytest.raises(ValueError):
        parse_station_payload(payload)


def test_fetch_station_state(client, http, settings):
    http.get.return_value = _response(
        {"batteries": [{"slot_id": "1", "battery_id": "B1", "lock_status": "1"}]}
    )

    result = client.fetch_station_state("S1")

    assert isinstance(result, Reachable)
    assert [o.battery_id for o in result.slots] == ["B1"]
    http.get.assert_called_once_with(
        f"{settings.telemetry_base}/v1/station/S1",
        auth=(settings.telemetry_api_key, ""),
        timeout=settings.http_timeout_sec,
    )


def test_malformed_body_is_unreachable(client, http):
    http.get.return_value = _response({"error": "unknown station"})

    result = client.fetch_station_state("S1")

    assert isinstance(result, Unreachable)
    assert result.reason.startswith("malformed telemetry")


def test_timeout_is_unreachable(client, http):
    http.get.side_effect = requests.Timeout("read timed out")

    assert client.fetch_station_state("S1") == Unreachable(reason="telemetry timeout")


def test_connection_error_is_unreachable(client, http):
    http.get.side_effect = requests.ConnectionError("refused")

    result = client.fetch_station_state("S1")

    assert isinstance(result, Unreachable)
    assert result.reason.startswith("telemetry request failed")


def test_http_error_status_is_unreachable(client, http):
    response = _response(None)
    response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
    http.get.return_value = response

    assert isinstance(client.fetch_station_state("S1"), Unreachable)


def test_breaker_opens_per_station(settings, http):
    client = TelemetryClient(
        settings.model_copy(update={"cb_telemetry_fail_max": 2}), session=http
    )
    http.get.side_effect = requests.ConnectionError("refused")

    first = client.fetch_station_state("S1")
    client.fetch_station_state("S1")
    third = client.fetch_station_state("S1")

    assert first.reason.startswith("telemetry request failed")
    assert third == Unreachable(reason="circuit open")
    assert http.get.call_count == 2

    http.get.side_effect = None
    http.get.return_value = _response({"batteries": []})
    assert client.fetch_station_state("S2") == Reachable()

    stats = client.get_circuit_breaker_stats()
    assert stats["S1"]["fail_counter"] >= 2
    assert stats["S2"]["fail_counter"] == 0


def test_failure_that_trips_breaker_is_recorded(settings, http, monkeypatch):
    recorder = Mock()
    monkeypatch.setattr(MetricsCollector, "record_external_api_call", recorder)
    client = TelemetryClient(
        settings.model_copy(update={"cb_telemetry_fail_max": 2}), session=http
    )
    http.get.side_effect = requests.ConnectionError("refused")

    for _ in range(3):
        client.fetch_station_state("S1")

    assert http.get.call_count == 2
    outcomes = [c.args[3] for c in recorder.call_args_list]
    assert outcomes == [False, False]
