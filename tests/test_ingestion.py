from __future__ import annotations

import hashlib
import math
from datetime import UTC, datetime

import pytest

from busfusion.exceptions import MalformedPingError
from busfusion.ingestion.normalize import drop_placeholders, is_placeholder, parse_number, parse_text
from busfusion.ingestion.submit import hash_device_token, malformed_result, parse_ping, result_for
from busfusion.models.ping import ValidatedPing, ValidationFlag, ValidationResult

RECEIVED = datetime(2026, 1, 5, 8, 0, tzinfo=UTC)


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "busId": "B1",
        "deviceId": "dev-a",
        "latitude": 23.7808,
        "longitude": 90.4,
        "accuracy": 12,
        "timestamp": 1_767_600_000_000,
    }
    payload.update(overrides)
    return payload


class TestNormalize:
    @pytest.mark.parametrize("value", [None, True, "", "--", "NaN", "n/a", "abc", float("nan"), float("inf")])
    def test_parse_number_rejects_placeholders(self, value: object) -> None:
        assert parse_number(value) is None

    def test_parse_number_parses_numbers_and_strings(self) -> None:
        assert parse_number(" 23.5 ") == 23.5
        assert parse_number(7) == 7.0

    def test_parse_text(self) -> None:
        assert parse_text(None) is None
        assert parse_text("   ") is None
        assert parse_text(" B1 ") == "B1"
        assert parse_text(42) == "42"

    def test_drop_placeholders(self) -> None:
        cleaned = drop_placeholders({"speed": "--", "heading": None, "lat": 23.7, "extra": {}, "tags": [], "acc": 0})
        assert cleaned == {"lat": 23.7, "acc": 0}
        assert is_placeholder("Undefined")
        assert not is_placeholder(0.0)


class TestParsePing:
    def test_camel_case_aliases(self) -> None:
        ping = parse_ping(_payload(speed="18.5", heading=-90), received_at=RECEIVED)

        assert ping.bus_id == "B1"
        assert ping.device_id == "dev-a"
        assert ping.lat == 23.7808
        assert ping.lng == 90.4
        assert ping.speed == 18.5
        assert ping.heading == 270.0
        assert ping.client_timestamp == datetime.fromtimestamp(1_767_600_000, tz=UTC)
        assert ping.server_timestamp == RECEIVED

    def test_device_token_is_hashed_with_salt(self) -> None:
        payload = _payload(device_token="secret-token")
        del payload["deviceId"]

        ping = parse_ping(payload, received_at=RECEIVED, salt="pepper")

        assert ping.device_id == hashlib.sha256(b"secret-tokenpepper").hexdigest()
        assert ping.device_id == hash_device_token("secret-token", "pepper")
        assert "secret-token" not in ping.model_dump_json()

    def test_server_timestamp_cannot_be_supplied_by_client(self) -> None:
        ping = parse_ping(_payload(serverTimestamp="2020-01-01T00:00:00Z"), received_at=RECEIVED)
        assert ping.server_timestamp == RECEIVED

    def test_iso_timestamp(self) -> None:
        ping = parse_ping(_payload(timestamp="2026-01-05T07:59:30+00:00"), received_at=RECEIVED)
        assert ping.client_timestamp == datetime(2026, 1, 5, 7, 59, 30, tzinfo=UTC)

    def test_placeholder_optional_fields_fall_back_to_none(self) -> None:
        ping = parse_ping(_payload(speed="--", heading="null"), received_at=RECEIVED)
        assert ping.speed is None
        assert ping.heading is None

    def test_nan_coordinates_pass_structural_parsing(self) -> None:
        ping = parse_ping(_payload(latitude=float("nan")), received_at=RECEIVED)
        assert math.isnan(ping.lat)

    def test_non_numeric_coordinate_is_malformed(self) -> None:
        payload = _payload(lat="north")
        del payload["latitude"]
        with pytest.raises(MalformedPingError) as exc_info:
            parse_ping(payload, received_at=RECEIVED)
        assert exc_info.value.field == "lat"

    @pytest.mark.parametrize(
        "overrides",
        [{"accuracy": -1}, {"speed": -3}, {"busId": "  "}, {"timestamp": "yesterday"}],
    )
    def test_structural_failures(self, overrides: dict[str, object]) -> None:
        with pytest.raises(MalformedPingError):
            parse_ping(_payload(**overrides), received_at=RECEIVED)

    def test_missing_identity_is_malformed(self) -> None:
        payload = _payload()
        del payload["deviceId"]
        with pytest.raises(MalformedPingError):
            parse_ping(payload, received_at=RECEIVED)

    def test_non_mapping_is_malformed(self) -> None:
        with pytest.raises(MalformedPingError):
            parse_ping(["not", "a", "ping"], received_at=RECEIVED)  # type: ignore[arg-type]


def test_malformed_result() -> None:
    result = malformed_result(MalformedPingError("bad"))
    assert not result.accepted
    assert result.flags == frozenset({ValidationFlag.MALFORMED})
    assert result.error == "bad"


def test_result_for_validated_ping() -> None:
    ping = parse_ping(_payload(), received_at=RECEIVED)
    validated = ValidatedPing(
        ping=ping,
        result=ValidationResult(is_valid=True, confidence_weight=0.7, flags=frozenset({ValidationFlag.OFF_ROUTE})),
    )

    result = result_for(validated)

    assert result.accepted
    assert result.confidence_weight == 0.7
    assert result.ping_id == ping.ping_id
    assert result.flags == frozenset({ValidationFlag.OFF_ROUTE})
