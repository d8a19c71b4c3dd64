import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from fastapi.concurrency import run_in_threadpool
from backup_server.crud import BackupGateway

logger = logging.getLogger("version_allocator")

class VersionAllocator:
    """
    Hands out version numbers per (client, backup name).

    The next version is always read from the metadata store. Reading the
    current maximum and inserting the pending backup that claims the next
    number happen under one lock per key, so two concurrent starts can
    never receive the same version.

    Each allocated version also gets its own lock. Adding a file to a
    version and finalizing it both hold that lock, so a version never
    gains files while it is being committed.
    """

    def __init__(self, gateway: BackupGateway):
        self.gateway = gateway
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._version_locks: Dict[Tuple[str, str, int], asyncio.Lock] = {}

    def _lock_for(self, client_id: str, backup_name: str) -> asyncio.Lock:
        key = (client_id, backup_name)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def version_lock(self, client_id: str, backup_name: str, version: int) -> asyncio.Lock:
        key = (client_id, backup_name, version)
        lock = self._version_locks.get(key)
        if lock is None:
            lock = self._version_locks.setdefault(key, asyncio.Lock())
        return lock

    def release_version(self, client_id: str, backup_name: str, version: int) -> None:
        """Forget the lock of a version that can no longer change."""
        lock = self._version_locks.get((client_id, backup_name, version))
        if lock is not None and not lock.locked():
            del self._version_locks[(client_id, backup_name, version)]

    def next_version(self, client_id: str, backup_name: str) -> int:
        current = self.gateway.max_version(client_id, backup_name)
        return 1 if current is None else current + 1

    def _reserve(self, client_id: str, backup_name: str, metadata: Optional[Dict[str, Any]],
                 timestamp: datetime) -> Tuple[int, int]:
        version = self.next_version(client_id, backup_name)
        backup_id = self.gateway.create_backup(client_id, backup_name, version, timestamp, metadata)
        return backup_id, version

    async def allocate(self, client_id: str, backup_name: str,
                       metadata: Optional[Dict[str, Any]] = None,
                       timestamp: Optional[datetime] = None) -> Tuple[int, int]:
        """
        Reserve the next version by creating a pending backup for it.

        Returns ``(backup_id, version)``.
        """
        async with self._lock_for(client_id, backup_name):
            backup_id, version = await run_in_threadpool(
                self._reserve, client_id, backup_name, metadata, timestamp or datetime.utcnow()
            )
        logger.info(f"Allocated version {version} for {client_id}/{backup_name} (backup {backup_id})")
        return backup_id, version
