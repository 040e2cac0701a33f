"""Unified session fetcher: merges Plex + Jellyfin sessions into one snapshot."""

import asyncio
import logging
from typing import Protocol

from errors import TransientFetchError
from models import SessionSnapshot, Snapshot

logger = logging.getLogger(__name__)


class MediaServerClient(Protocol):
    source: str

    @property
    def enabled(self) -> bool: ...

    async def list_active_sessions(self) -> list[SessionSnapshot]: ...

    async def select_subtitle_stream(self, session: SessionSnapshot, stream_id: str) -> None: ...


class SessionFetcher:
    """Fetches sessions from every configured server, each call bounded by ``timeout``."""

    def __init__(self, clients: list[MediaServerClient], timeout: float):
        self.clients = [c for c in clients if c.enabled]
        self.timeout = timeout

    def client_for(self, source: str) -> MediaServerClient:
        for client in self.clients:
            if client.source == source:
                return client
        raise KeyError(f"No client configured for source '{source}'")

    async def _list(self, client: MediaServerClient) -> list[SessionSnapshot]:
        try:
            return await asyncio.wait_for(client.list_active_sessions(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientFetchError(f"{client.source} session fetch timed out after {self.timeout}s") from e

    async def fetch(self) -> Snapshot:
        """Fetch sessions from all sources concurrently.

        A source that fails is reported in ``failed_sources`` so its sessions are
        not mistaken for vanished ones. Raises TransientFetchError only when every
        configured source failed.
        """
        if not self.clients:
            return Snapshot()

        results = await asyncio.gather(
            *(self._list(c) for c in self.clients), return_exceptions=True,
        )
        snapshot = Snapshot()

        for client, result in zip(self.clients, results):
            if isinstance(result, TransientFetchError):
                logger.warning("Failed to fetch sessions: %s", result)
                snapshot.failed_sources.append(client.source)
                continue
            if isinstance(result, BaseException):
                raise result
            snapshot.sessions.extend(result)

        if len(snapshot.failed_sources) == len(self.clients):
            raise TransientFetchError("All configured servers failed to list sessions")
        return snapshot
