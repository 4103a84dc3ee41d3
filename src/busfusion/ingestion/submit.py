"""Structural parsing of inbound ping payloads.

This module is the ingestion boundary:

- redact and log the raw payload
- replace a raw device token with its salted hash
- parse the payload into a typed :class:`~busfusion.models.RawPing`
- stamp the server receipt time

Anything that fails here is a :class:`~busfusion.exceptions.MalformedPingError`
and never reaches validation or any store.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from busfusion._redact import redact_for_log
from busfusion.exceptions import MalformedPingError
from busfusion.ingestion.normalize import drop_placeholders, parse_text
from busfusion.models.ping import RawPing, SubmitResult, ValidatedPing, ValidationFlag

_logger = logging.getLogger(__name__)

_TOKEN_KEYS = ("device_token", "deviceToken", "token")


def hash_device_token(token: str, salt: str = "") -> str:
    """Derive the opaque device id from a raw device token.

    Returns
    -------
    str
        64-character lowercase SHA-256 hex digest of ``token + salt``.
    """
    return hashlib.sha256(f"{token}{salt}".encode()).hexdigest()


def parse_ping(payload: Mapping[str, Any], *, received_at: datetime, salt: str = "") -> RawPing:
    """Parse a raw payload into a :class:`RawPing`.

    Raises
    ------
    MalformedPingError
        When the payload is not a mapping, lacks an identity, or carries
        non-numeric coordinates, negative accuracy/speed, or an unusable
        timestamp.
    """
    if not isinstance(payload, Mapping):
        raise MalformedPingError(f"ping payload must be an object, got {type(payload).__name__}")

    _logger.debug("Parsing ping payload %s", redact_for_log(payload))
    data = drop_placeholders(payload)

    for key in _TOKEN_KEYS:
        token = parse_text(data.pop(key, None))
        if token is not None and "device_id" not in data and "deviceId" not in data:
            data["device_id"] = hash_device_token(token, salt)

    # Receipt time is ours to assign, never the client's.
    data.pop("serverTimestamp", None)
    data["server_timestamp"] = received_at

    try:
        return RawPing.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise MalformedPingError(
            f"malformed ping ({len(errors)} error(s)): {location or 'payload'}: {first.get('msg', 'invalid')}",
            field=location,
        ) from exc


def malformed_result(error: MalformedPingError) -> SubmitResult:
    return SubmitResult(accepted=False, flags=frozenset({ValidationFlag.MALFORMED}), error=str(error))


def result_for(validated: ValidatedPing) -> SubmitResult:
    return SubmitResult(
        accepted=validated.is_valid,
        flags=validated.result.flags,
        confidence_weight=validated.confidence_weight,
        ping_id=validated.ping_id,
    )
