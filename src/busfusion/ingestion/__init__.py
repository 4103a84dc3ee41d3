"""Ingestion layer.

This package turns inbound ping payloads (HTTP bodies, batched uploads) into
typed :class:`~busfusion.models.RawPing` objects before validation.
"""

__all__: list[str] = []
