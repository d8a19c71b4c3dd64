import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from fastapi.concurrency import run_in_threadpool
from backup_server.core.exceptions import BackupNotFound, SessionNotFound, ValidationError
from backup_server.crud import BackupGateway
from backup_server.services.chunk_store import ChunkStore
from backup_server.services.version_allocator import VersionAllocator
from backup_server.utils.file_utils import format_iso_date, normalize_file_name, validate_path_component

logger = logging.getLogger("session_service")


class SessionState(str, Enum):
    CREATED = "created"
    RECEIVING = "receiving"
    COMPLETE = "complete"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    EXPIRED = "expired"


WRITABLE_STATES = (SessionState.CREATED, SessionState.RECEIVING, SessionState.COMPLETE)


@dataclass
class UploadSession:
    """
    Bookkeeping for one in-flight chunked file transfer.
    """
    session_id: str
    client_id: str
    backup_name: str
    file_name: str
    file_size: int
    total_chunks: int
    version: int
    backup_id: int
    temp_folder: Path
    metadata: Dict[str, Any] = field(default_factory=dict)
    declared_checksum: Optional[str] = None
    state: SessionState = SessionState.CREATED
    received_indices: Set[int] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_activity: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def uploaded_chunks(self) -> int:
        return len(self.received_indices)

    @property
    def is_complete(self) -> bool:
        return self.uploaded_chunks == self.total_chunks

    @property
    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.received_indices]

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class SessionStore:
    """
    In-memory table of upload sessions owned by one service instance.

    The table lock only guards dictionary access; it is never held while
    chunk data is written. State is lost when the process restarts.
    """

    def __init__(self):
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: UploadSession) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session

    async def get(self, session_id: str) -> Optional[UploadSession]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def remove(self, session_id: str) -> Optional[UploadSession]:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    async def for_version(self, client_id: str, backup_name: str, version: int) -> List[UploadSession]:
        async with self._lock:
            return [
                s for s in self._sessions.values()
                if s.client_id == client_id and s.backup_name == backup_name and s.version == version
            ]

    async def snapshot(self) -> List[UploadSession]:
        async with self._lock:
            return list(self._sessions.values())


def _require_positive(value: Any, field_name: str) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")
    if number <= 0:
        raise ValidationError(f"{field_name} must be positive")
    return number


class SessionManager:
    """
    Owns the lifecycle of chunked uploads: start, chunk receipt and expiry.
    """

    def __init__(self, store: SessionStore, chunk_store: ChunkStore, allocator: VersionAllocator,
                 gateway: BackupGateway, idle_timeout_seconds: int):
        self.store = store
        self.chunk_store = chunk_store
        self.allocator = allocator
        self.gateway = gateway
        self.idle_timeout_seconds = idle_timeout_seconds

    async def start_session(
        self,
        client_id: str,
        backup_name: str,
        file_name: str,
        file_size: Any,
        total_chunks: Any,
        metadata: Optional[Dict[str, Any]] = None,
        checksum: Optional[str] = None,
        version: Optional[int] = None,
    ) -> UploadSession:
        """
        Open an upload session for one file.

        Without ``version`` a new version is allocated; with it, the file is
        added to an existing pending backup of that version.
        """
        validate_path_component(client_id, "clientId")
        validate_path_component(backup_name, "backupName")
        file_size = _require_positive(file_size, "fileSize")
        total_chunks = _require_positive(total_chunks, "totalChunks")
        if total_chunks > file_size:
            raise ValidationError("totalChunks cannot exceed fileSize")
        normalized_name = normalize_file_name(file_name)
        if checksum is not None:
            checksum = checksum.strip().lower()
            if len(checksum) != 64 or any(c not in "0123456789abcdef" for c in checksum):
                raise ValidationError("checksum must be a hex encoded SHA-256 digest")

        now = datetime.utcnow()
        if version is None:
            backup_metadata = dict(metadata or {})
            backup_metadata["isoDate"] = format_iso_date(now)
            backup_id, version = await self.allocator.allocate(client_id, backup_name, backup_metadata, now)
            async with self.allocator.version_lock(client_id, backup_name, version):
                return await self._open_session(client_id, backup_name, normalized_name, file_size,
                                                total_chunks, version, backup_id, metadata, checksum, now)

        version = _require_positive(version, "version")
        # Held until the session is registered, so finalize sees it or the backup is no longer pending
        async with self.allocator.version_lock(client_id, backup_name, version):
            backup = await run_in_threadpool(self.gateway.find_backup, client_id, backup_name, version)
            if backup is None:
                raise BackupNotFound(f"Backup {backup_name} v{version} not found")
            if backup.status != "pending":
                raise ValidationError(f"Backup {backup_name} v{version} is already {backup.status}")
            for other in await self.store.for_version(client_id, backup_name, version):
                if other.file_name == normalized_name and other.state in WRITABLE_STATES:
                    raise ValidationError(f"{normalized_name} is already being uploaded to v{version}")
            return await self._open_session(client_id, backup_name, normalized_name, file_size,
                                            total_chunks, version, backup.id, metadata, checksum, now)

    async def _open_session(self, client_id: str, backup_name: str, file_name: str, file_size: int,
                            total_chunks: int, version: int, backup_id: int,
                            metadata: Optional[Dict[str, Any]], checksum: Optional[str],
                            now: datetime) -> UploadSession:
        session_id = secrets.token_urlsafe(24)
        temp_folder = self.chunk_store.create_session_folder(session_id)
        session = UploadSession(
            session_id=session_id,
            client_id=client_id,
            backup_name=backup_name,
            file_name=file_name,
            file_size=file_size,
            total_chunks=total_chunks,
            version=version,
            backup_id=backup_id,
            temp_folder=temp_folder,
            metadata=dict(metadata or {}),
            declared_checksum=checksum,
            created_at=now,
        )
        await self.store.add(session)
        await run_in_threadpool(self.gateway.upsert_backup_file, backup_id, file_name, 0, None, "pending")

        logger.info(
            f"Started upload session {session_id} for {client_id}/{backup_name} v{version}: "
            f"{file_name} ({file_size} bytes, {total_chunks} chunks)"
        )
        return session

    async def get_session(self, session_id: str, client_id: Optional[str] = None) -> UploadSession:
        session = await self.store.get(session_id) if session_id else None
        # Sessions of other clients are reported as unknown
        if session is None or (client_id is not None and session.client_id != client_id):
            raise SessionNotFound("Invalid session ID", {"session_id": session_id})
        return session

    async def receive_chunk(self, session_id: str, chunk_index: Any, data: bytes,
                            client_id: Optional[str] = None) -> Tuple[int, int]:
        """
        Persist one chunk and return ``(uploaded_chunks, total_chunks)``.

        Re-sending an index overwrites the stored chunk without counting it twice.
        """
        session = await self.get_session(session_id, client_id)
        if chunk_index is None or isinstance(chunk_index, bool):
            raise ValidationError("chunkIndex is required")
        try:
            chunk_index = int(chunk_index)
        except (TypeError, ValueError):
            raise ValidationError("chunkIndex must be an integer")
        if data is None:
            raise ValidationError("chunk is required")

        async with session.lock:
            if session.state not in WRITABLE_STATES:
                raise SessionNotFound(
                    f"Session {session_id} is {session.state.value}",
                    {"session_id": session_id, "state": session.state.value},
                )
            if not 0 <= chunk_index < session.total_chunks:
                raise ValidationError(
                    f"chunkIndex {chunk_index} out of range 0..{session.total_chunks - 1}"
                )

            await self.chunk_store.write_chunk(session.temp_folder, chunk_index, data)
            if chunk_index in session.received_indices:
                logger.debug(f"Chunk {chunk_index} of session {session_id} re-sent, overwritten")
            session.received_indices.add(chunk_index)
            session.state = SessionState.COMPLETE if session.is_complete else SessionState.RECEIVING
            session.touch()
            return session.uploaded_chunks, session.total_chunks

    async def discard_session(self, session: UploadSession, state: SessionState) -> None:
        """
        Remove a session from the table and delete its chunks.
        """
        session.state = state
        await self.store.remove(session.session_id)
        self.chunk_store.remove_session_folder(session.temp_folder)

    async def expire_idle_sessions(self, now: Optional[float] = None) -> int:
        """
        Drop sessions idle for longer than the configured window.

        Pending backups left without any live session are marked failed; the
        version they claimed is not handed out again.
        """
        now = time.monotonic() if now is None else now
        expired = 0
        for session in await self.store.snapshot():
            if now - session.last_activity <= self.idle_timeout_seconds:
                continue
            if session.lock.locked():
                # A chunk write or finalize is running right now
                continue
            async with session.lock:
                if session.state not in WRITABLE_STATES:
                    continue
                logger.info(
                    f"Expiring idle session {session.session_id} "
                    f"({session.uploaded_chunks}/{session.total_chunks} chunks)"
                )
                await self.discard_session(session, SessionState.EXPIRED)
                await run_in_threadpool(
                    self.gateway.upsert_backup_file, session.backup_id, session.file_name, 0, None, "failed"
                )
                expired += 1

            # Taken after the session lock is released; finalize acquires them in the opposite order
            async with self.allocator.version_lock(session.client_id, session.backup_name, session.version):
                remaining = await self.store.for_version(session.client_id, session.backup_name, session.version)
                if not remaining:
                    await run_in_threadpool(self._fail_abandoned_backup, session)
        return expired

    def _fail_abandoned_backup(self, session: UploadSession) -> None:
        backup = self.gateway.get_backup(session.backup_id)
        if backup is None or backup.status != "pending":
            return
        self.gateway.update_backup_status(session.backup_id, "failed")
        self.gateway.create_sync_log(
            session.client_id,
            "backup",
            "failed",
            f"Upload of {session.file_name} expired (v{session.version})",
            {"backupId": session.backup_id, "backupName": session.backup_name,
             "version": session.version},
        )
