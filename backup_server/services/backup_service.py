import logging
from datetime import datetime
from typing import Any, AsyncIterable, Dict, Optional, Tuple
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import sessionmaker
from backup_server.core.config import Settings
from backup_server.core.exceptions import AssemblyError
from backup_server.crud import BackupGateway
from backup_server.services.checksum import ChecksumResult, stream_to_file
from backup_server.services.chunk_store import ChunkStore
from backup_server.services.finalize_service import BackupSummary, Finalizer, summarize
from backup_server.services.retention import cleanup_old_backups
from backup_server.services.session_service import SessionManager, SessionStore, UploadSession
from backup_server.services.version_allocator import VersionAllocator
from backup_server.utils.file_utils import (
    ensure_directory_exists,
    format_iso_date,
    normalize_file_name,
    validate_path_component,
    version_directory,
)

logger = logging.getLogger("backup_service")

class BackupService:
    """
    Entry point of the upload core. One instance owns one session table,
    so separate app instances (or tests) never share in-flight uploads.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker):
        self.settings = settings
        self.gateway = BackupGateway(session_factory)
        self.chunk_store = ChunkStore(settings.TEMP_DIR)
        self.allocator = VersionAllocator(self.gateway)
        self.sessions = SessionManager(
            SessionStore(),
            self.chunk_store,
            self.allocator,
            self.gateway,
            settings.SESSION_IDLE_TIMEOUT_SECONDS,
        )
        self.finalizer = Finalizer(
            self.sessions,
            self.chunk_store,
            self.gateway,
            settings.STORAGE_DIR,
            settings.MAX_BACKUPS_PER_ENTRY,
            settings.CHECKSUM_READ_SIZE,
        )

    async def start_upload(self, client_id: str, backup_name: str, file_name: str, file_size: Any,
                           total_chunks: Any, metadata: Optional[Dict[str, Any]] = None,
                           checksum: Optional[str] = None, version: Optional[int] = None) -> UploadSession:
        return await self.sessions.start_session(
            client_id, backup_name, file_name, file_size, total_chunks, metadata, checksum, version
        )

    async def upload_chunk(self, session_id: str, chunk_index: Any, data: bytes,
                           client_id: Optional[str] = None) -> Tuple[int, int]:
        return await self.sessions.receive_chunk(session_id, chunk_index, data, client_id)

    async def finalize(self, client_id: str, backup_name: str, version: int) -> BackupSummary:
        return await self.finalizer.finalize(client_id, backup_name, version)

    async def expire_idle_sessions(self) -> int:
        return await self.sessions.expire_idle_sessions()

    async def upload_file(self, client_id: str, backup_name: str, file_name: str,
                          stream: AsyncIterable[bytes],
                          metadata: Optional[Dict[str, Any]] = None) -> BackupSummary:
        """
        Store a whole file sent in one request as a new completed version.

        The body is streamed to its final path while being hashed, so
        memory use does not grow with the file size.
        """
        validate_path_component(client_id, "clientId")
        validate_path_component(backup_name, "backupName")
        normalized_name = normalize_file_name(file_name)

        now = datetime.utcnow()
        backup_metadata = dict(metadata or {})
        backup_metadata["isoDate"] = format_iso_date(now)
        backup_id, version = await self.allocator.allocate(client_id, backup_name, backup_metadata, now)

        dest = version_directory(self.settings.STORAGE_DIR, client_id, backup_name, version) / normalized_name
        try:
            ensure_directory_exists(dest.parent)
            result = await stream_to_file(stream, dest)
        except Exception as e:
            # Covers client disconnects as well as disk errors
            logger.error(f"Upload of {normalized_name} for {client_id}/{backup_name} v{version} failed: {str(e)}")
            await run_in_threadpool(self._fail_direct_upload, client_id, backup_name, version,
                                    backup_id, normalized_name, str(e) or type(e).__name__)
            if isinstance(e, OSError):
                raise AssemblyError(
                    f"I/O error while storing {normalized_name}: {str(e)}",
                    {"fileName": normalized_name, "path": str(dest)},
                ) from e
            raise

        return await run_in_threadpool(self._complete_direct_upload, client_id, backup_name, version,
                                       backup_id, normalized_name, result)

    def _fail_direct_upload(self, client_id: str, backup_name: str, version: int, backup_id: int,
                            file_name: str, message: str) -> None:
        self.gateway.upsert_backup_file(backup_id, file_name, 0, None, "failed")
        self.gateway.update_backup_status(backup_id, "failed")
        self.gateway.create_sync_log(
            client_id, "backup", "failed", message,
            {"backupId": backup_id, "backupName": backup_name, "version": version},
        )

    def _complete_direct_upload(self, client_id: str, backup_name: str, version: int, backup_id: int,
                                file_name: str, result: ChecksumResult) -> BackupSummary:
        self.gateway.upsert_backup_file(backup_id, file_name, result.size, result.checksum, "uploaded")
        self.gateway.update_backup_status(backup_id, "completed", 1, result.size)
        self.gateway.create_sync_log(
            client_id,
            "backup",
            "success",
            f"Backed up 1 files (v{version})",
            {"backupId": backup_id, "backupName": backup_name, "version": version,
             "filesCount": 1, "totalSize": result.size},
        )
        logger.info(f"Stored {file_name} for {client_id}/{backup_name} v{version} ({result.size} bytes)")

        cleanup_old_backups(self.gateway, self.settings.STORAGE_DIR, client_id, backup_name,
                            self.settings.MAX_BACKUPS_PER_ENTRY)
        return summarize(self.gateway.get_backup(backup_id))
