"""Custom exception hierarchy for busfusion."""

from __future__ import annotations


class BusFusionError(Exception):
    """Base exception for all busfusion errors."""


class BusFusionConfigError(BusFusionError):
    """Invalid or missing configuration."""


class MalformedPingError(BusFusionError):
    """Inbound ping payload is structurally invalid.

    Raised at the ingestion boundary before any validation or state change.
    ``field`` names the offending payload key when it is known.
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class StorageUnavailableError(BusFusionError):
    """A downstream collaborator (broadcaster, archive) could not be reached.

    Core state is already committed when this is raised, so callers only log
    it; the collaborator is expected to be idempotent on retry.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        target: str = "",
    ) -> None:
        self.status_code = status_code
        self.target = target
        super().__init__(message)


class TrustStoreCorruptionError(BusFusionError):
    """A device trust record holds scores outside ``[0, 1]`` (or NaN).

    Fatal for that record only: the store clamps the values and continues.
    """

    def __init__(self, message: str, *, device_id: str = "") -> None:
        self.device_id = device_id
        super().__init__(message)
