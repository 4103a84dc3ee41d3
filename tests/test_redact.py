from __future__ import annotations

from busfusion._redact import redact_for_log, short_id


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "busId": "B1",
        "device_token": "raw-token",
        "deviceToken": "raw-token",
        "fingerprint": {"canvas": "abc"},
        "nested": {"Authorization": "Bearer x", "lat": 23.78},
        "history": [{"token": "t"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["busId"] == "B1"
    assert redacted["device_token"] == "<redacted>"
    assert redacted["deviceToken"] == "<redacted>"
    assert redacted["fingerprint"] == "<redacted>"
    assert redacted["nested"]["Authorization"] == "<redacted>"
    assert redacted["nested"]["lat"] == 23.78
    assert redacted["history"][0]["token"] == "<redacted>"


def test_redact_for_log_coarsens_location_and_device_id() -> None:
    payload = {
        "deviceId": "9c4f1e2ab77d0e35c8",
        "latitude": 23.780812,
        "lng": 90.412345,
        "accuracy": 7.25,
        "heading": "north",
    }

    redacted = redact_for_log(payload)
    assert redacted["deviceId"] == "9c4f1e2a..."
    assert redacted["latitude"] == 23.781
    assert redacted["lng"] == 90.412
    assert redacted["accuracy"] == 7.25
    assert redacted["heading"] == "north"


def test_redact_for_log_leaves_unparseable_coordinates_alone() -> None:
    redacted = redact_for_log({"lat": "--", "lng": None})
    assert redacted == {"lat": "--", "lng": None}


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_short_id() -> None:
    assert short_id("3fa2b9c1d4e5f6a7") == "3fa2b9c1..."
    assert short_id("abc") == "abc"
    assert short_id(None) == "unknown"
    assert short_id("") == "unknown"
