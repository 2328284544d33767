"""
manager.py

Connection manager: owns the fleet's connection set. Batch dials fan out
as concurrent tasks and tolerate partial failure; single dials do not.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional

from flightctl.errors import VehicleConnectionError
from flightctl.vehicle import ConnectionHandle, VehicleLink

logger = logging.getLogger(__name__)


class TargetStatus(str, Enum):
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class Target:
    id: int
    endpoint: str
    connection: ConnectionHandle
    status: TargetStatus = TargetStatus.CONNECTED


class ConnectionManager:
    """
    Fleet connection set.

    Targets hold the manager's reference on each connection handle; a run
    worker that reuses a Target acquires its own reference, so the
    connection stays open until both sides have released it.
    """

    def __init__(self, link: VehicleLink):
        self.link = link
        self._targets: List[Target] = []

    @property
    def targets(self) -> List[Target]:
        return list(self._targets)

    def __len__(self):
        return len(self._targets)

    def _append(self, endpoint: str, handle: ConnectionHandle) -> Target:
        target = Target(id=len(self._targets), endpoint=endpoint, connection=handle)
        self._targets.append(target)
        logger.info(f"✓ Target {target.id} connected: {endpoint}")
        return target

    async def add_target(self, url: str) -> Target:
        """Dial one endpoint; VehicleConnectionError propagates to the caller"""
        handle = await self.link.connect(url)
        return self._append(url, handle)

    async def add_targets(self, urls: Iterable[str]) -> List[Target]:
        """
        Dial every URL concurrently.

        Failed dials are logged and dropped. Returns once every attempt has
        resolved; targets are appended in the order their dials complete.
        """
        urls = list(urls)
        added: List[Target] = []

        async def dial(url: str):
            try:
                handle = await self.link.connect(url)
            except VehicleConnectionError as e:
                logger.warning(f"✗ {e}")
                return
            except Exception as e:
                logger.warning(f"✗ Failed to connect to {url}: {e!r}")
                return
            added.append(self._append(url, handle))

        await asyncio.gather(*(dial(url) for url in urls))
        logger.info(f"Connected {len(added)}/{len(urls)} targets")
        return added

    def find(self, endpoint: str) -> Optional[Target]:
        """First connected target for an endpoint"""
        for target in self._targets:
            if target.endpoint == endpoint and target.status == TargetStatus.CONNECTED:
                return target
        return None

    def mark_failed(self, endpoint: str):
        """Flag every target on an endpoint whose vehicle has faulted"""
        for target in self._targets:
            if target.endpoint == endpoint:
                target.status = TargetStatus.FAILED

    def close(self):
        """Release the manager's reference on every target"""
        for target in self._targets:
            target.connection.release()
        logger.info(f"Connection manager closed ({len(self._targets)} targets released)")
        self._targets.clear()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
