"""
Connectivity monitor.

Holds the current online flag, optionally refreshes it with an HTTP probe,
and emits CONNECTIVITY_CHANGED whenever the flag flips.
"""

import logging

import httpx

from ledger_intake.config import ConnectivityConfig
from ledger_intake.events import CONNECTIVITY_CHANGED, EventEmitter

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Online/offline state shared by the selector and the offline queue."""

    def __init__(
        self,
        config: ConnectivityConfig | None = None,
        events: EventEmitter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or ConnectivityConfig()
        self.events = events or EventEmitter()
        self._online = self.config.assume_online
        self._transport = transport

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """Update the flag; listeners hear about real transitions only."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        self.events.emit(CONNECTIVITY_CHANGED, online=online)

    async def probe(self) -> bool:
        """Refresh the flag from the configured probe URL.

        Without a probe URL the current flag is returned unchanged.
        """
        if not self.config.probe_url:
            return self._online

        try:
            async with httpx.AsyncClient(
                timeout=self.config.probe_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.head(self.config.probe_url)
                online = response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe failed: %s", e)
            online = False

        self.set_online(online)
        return online
