"""
EQVault - Transport Boundary
The only module that can talk to the network.

Nothing on the local processing path imports this module; a sync
manager receives a transport explicitly when the user opts in.
"""

import asyncio
from typing import Any, Dict, Optional, Protocol

import requests
import structlog

from .errors import TransportError

logger = structlog.get_logger(__name__)


class SyncTransport(Protocol):
    """Delivers an encrypted envelope. Raises TransportError on failure."""

    async def send(self, envelope: Dict[str, Any]) -> None: ...


class NetworkMonitor(Protocol):
    def is_on_wifi(self) -> bool: ...


class StaticNetworkMonitor:
    """Network state supplied by the host application."""

    def __init__(self, on_wifi: bool = True):
        self.on_wifi = on_wifi

    def is_on_wifi(self) -> bool:
        return self.on_wifi


class HttpSyncTransport:
    """
    POSTs envelopes as JSON to a privacy-preserving endpoint.

    The endpoint only ever receives ciphertext plus routing metadata;
    it cannot decrypt or identify the user.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, envelope: Dict[str, Any]) -> None:
        try:
            response = self.session.post(
                self.endpoint,
                json=envelope,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            raise TransportError(f"Request failed: {e}") from e

        if not response.ok:
            raise TransportError(f"Endpoint returned HTTP {response.status_code}")

    async def send(self, envelope: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._post, envelope)
        logger.debug("envelope_sent", task_id=envelope.get("task_id"))

    def close(self) -> None:
        self.session.close()
