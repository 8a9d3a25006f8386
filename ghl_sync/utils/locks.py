"""
Per-(tenant, entity type) sync locks.

Replaces the old process-wide "last sync state": a run either holds the
lock for its scope or fails fast, it never queues behind another run.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from ghl_sync.error_handler import SyncAlreadyRunning
from ghl_sync.models.sync import EntityType


logger = logging.getLogger(__name__)


class SyncLockRegistry:
    """
    Advisory locks for one event loop.

    Check-and-set happens without an await in between, so two tasks on
    the same loop can never both acquire the same key.
    """

    def __init__(self):
        self._held: set[tuple[str, str]] = set()

    @staticmethod
    def _key(tenant_id: str, entity_type: EntityType) -> tuple[str, str]:
        return tenant_id, EntityType(entity_type).value

    def is_held(self, tenant_id: str, entity_type: EntityType) -> bool:
        return self._key(tenant_id, entity_type) in self._held

    @asynccontextmanager
    async def hold(self, tenant_id: str, entity_type: EntityType) -> AsyncIterator[None]:
        key = self._key(tenant_id, entity_type)
        if key in self._held:
            raise SyncAlreadyRunning(
                f"A {key[1]} sync is already running for tenant {tenant_id}",
                context={"tenant_id": tenant_id, "entity_type": key[1]},
            )

        self._held.add(key)
        logger.debug(f"Acquired sync lock {key}")
        try:
            yield
        finally:
            self._held.discard(key)
            logger.debug(f"Released sync lock {key}")
