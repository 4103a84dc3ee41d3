"""HTTP archive sink."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from busfusion._constants import USER_AGENT
from busfusion.exceptions import StorageUnavailableError
from busfusion.models.trip import TripRecord

_logger = logging.getLogger(__name__)


class HttpArchiveSink:
    """POSTs each completed :class:`TripRecord` as JSON.

    Transient failures (connection errors, timeouts, HTTP 5xx and 429) are
    retried with linear backoff up to ``max_attempts``. The record id is sent
    as ``Idempotency-Key`` so a receiver can drop duplicate deliveries.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
    ) -> None:
        self._url = url
        self._external_session = session is not None
        self._http = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff

    async def start(self) -> None:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
        self._http = None

    async def _post_once(self, http: aiohttp.ClientSession, record: TripRecord) -> None:
        headers = {
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
            "idempotency-key": record.record_id,
        }
        _logger.debug("POST %s record=%s", self._url, record.record_id)
        try:
            async with http.post(
                self._url,
                data=record.model_dump_json(),
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise StorageUnavailableError(
                        f"HTTP {resp.status} from archive: {text[:200]}",
                        status_code=resp.status,
                        target=self._url,
                    )
        except StorageUnavailableError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StorageUnavailableError(f"Archive request failed: {exc}", target=self._url) from exc

    async def archive(self, record: TripRecord) -> None:
        if self._http is None:
            raise StorageUnavailableError("HTTP archive sink is not started", target=self._url)
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._post_once(self._http, record)
                return
            except StorageUnavailableError as exc:
                retriable = exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429
                if not retriable or attempt == self._max_attempts:
                    raise
                _logger.debug("Archive attempt=%d for record=%s failed", attempt, record.record_id, exc_info=True)
                await asyncio.sleep(self._backoff * attempt)
