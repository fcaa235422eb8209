"""Best-effort forwarding of tracked events to the remote ingestion endpoint."""

from typing import Optional

import httpx
import structlog

from .events import UserEvent, to_millis, utc_now

logger = structlog.get_logger(__name__)


class RemoteCollector:
    """POSTs ``{event, timestamp}`` to the collector. Never raises, never retries."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._client = client
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._client

    async def send(self, event: UserEvent) -> bool:
        """Forward one event. Returns False when the collector rejected or could not be reached."""
        if not self.enabled:
            return False

        payload = {"event": event.to_json(), "timestamp": to_millis(utc_now())}
        try:
            response = await self._get_client().post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "event_forward_failed",
                event_id=event.id,
                url=self.url,
                error=str(e),
            )
            return False

        logger.debug("event_forwarded", event_id=event.id, status_code=response.status_code)
        return True

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
