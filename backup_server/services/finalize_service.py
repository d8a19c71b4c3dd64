import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List
from fastapi.concurrency import run_in_threadpool
from backup_server.core.exceptions import AssemblyError, BackupNotFound, IncompleteUpload
from backup_server.crud import BackupFileRecord, BackupGateway, BackupRecord
from backup_server.services.checksum import ChecksumResult, checksum_file, iter_file, stream_to_file
from backup_server.services.chunk_store import ChunkStore
from backup_server.services.retention import cleanup_old_backups
from backup_server.services.session_service import (
    WRITABLE_STATES,
    SessionManager,
    SessionState,
    UploadSession,
)
from backup_server.utils.file_utils import ensure_directory_exists, version_directory

logger = logging.getLogger("finalize_service")


@dataclass
class BackupSummary:
    backup_id: int
    backup_name: str
    version: int
    files_count: int
    total_size: int
    timestamp: datetime
    status: str


def summarize(backup: BackupRecord) -> BackupSummary:
    return BackupSummary(
        backup_id=backup.id,
        backup_name=backup.backup_name,
        version=backup.version,
        files_count=backup.files_count,
        total_size=backup.total_size,
        timestamp=backup.timestamp,
        status=backup.status,
    )


class Finalizer:
    """
    Assembles the chunks of every file in a backup version, verifies them
    and commits the version.

    A version becomes ``completed`` only when each of its files was written
    in chunk order and its size and checksum were recomputed from disk.
    """

    def __init__(self, sessions: SessionManager, chunk_store: ChunkStore, gateway: BackupGateway,
                 storage_dir: Path, max_backups: int, read_size: int):
        self.sessions = sessions
        self.chunk_store = chunk_store
        self.gateway = gateway
        self.storage_dir = storage_dir
        self.max_backups = max_backups
        self.read_size = read_size

    async def finalize(self, client_id: str, backup_name: str, version: int) -> BackupSummary:
        allocator = self.sessions.allocator
        # Serializes with other finalize calls and with files being added to this version
        async with allocator.version_lock(client_id, backup_name, version):
            summary = await self._finalize_version(client_id, backup_name, version)
        if summary.status == "completed":
            allocator.release_version(client_id, backup_name, version)
        return summary

    async def _finalize_version(self, client_id: str, backup_name: str, version: int) -> BackupSummary:
        backup = await run_in_threadpool(self.gateway.find_backup, client_id, backup_name, version)
        if backup is None:
            raise BackupNotFound(
                f"Backup {backup_name} v{version} not found",
                {"backup_name": backup_name, "version": version},
            )
        if backup.status == "completed":
            return summarize(backup)

        candidates = await self.sessions.store.for_version(client_id, backup_name, version)
        candidates.sort(key=lambda s: s.session_id)

        async with AsyncExitStack() as stack:
            # Sorted acquisition keeps lock order stable across callers
            for session in candidates:
                await stack.enter_async_context(session.lock)
            live = [s for s in candidates if s.state in WRITABLE_STATES]

            files = await run_in_threadpool(self.gateway.list_backup_files, backup.id)
            self._check_complete(live, files)
            for session in live:
                session.state = SessionState.FINALIZING

            failures: Dict[str, str] = {}
            try:
                for session in live:
                    try:
                        result = await self._assemble(session)
                    except AssemblyError as e:
                        logger.error(f"Assembly failed for {session.file_name} in {backup_name} v{version}: {e.message}")
                        failures[session.file_name] = e.message
                        session.state = SessionState.COMPLETE
                        continue
                    await run_in_threadpool(
                        self.gateway.upsert_backup_file, backup.id, session.file_name,
                        result.size, result.checksum, "uploaded",
                    )
                    await self.sessions.discard_session(session, SessionState.FINALIZED)
            except BaseException:
                # Unexpected errors leave the sessions writable so finalize can be retried
                for session in live:
                    if session.state == SessionState.FINALIZING:
                        session.state = SessionState.COMPLETE
                raise

        return await run_in_threadpool(self._commit, backup, failures)

    def _check_complete(self, live: List[UploadSession], files: List[BackupFileRecord]) -> None:
        incomplete = [s for s in live if not s.is_complete]
        if incomplete:
            raise IncompleteUpload(
                "Not all chunks uploaded",
                {
                    "files": [
                        {
                            "fileName": s.file_name,
                            "uploadedChunks": s.uploaded_chunks,
                            "totalChunks": s.total_chunks,
                            "missingChunks": s.missing_chunks,
                        }
                        for s in incomplete
                    ]
                },
            )

        live_names = {s.file_name for s in live}
        orphaned = [f.file_path for f in files if f.status != "uploaded" and f.file_path not in live_names]
        if orphaned:
            raise IncompleteUpload(
                "Upload sessions lost for some files; restart their upload",
                {"files": orphaned},
            )
        if not live and not files:
            raise IncompleteUpload("No files uploaded for this version", {"files": []})

    async def _assemble(self, session: UploadSession) -> ChecksumResult:
        """
        Concatenate a session's chunks into its final path and verify the result.
        """
        dest = version_directory(self.storage_dir, session.client_id, session.backup_name, session.version)
        dest = dest / session.file_name
        details = {"fileName": session.file_name, "path": str(dest)}

        try:
            ensure_directory_exists(dest.parent)
            chunk_paths = self.chunk_store.chunk_paths(session.temp_folder, session.total_chunks)

            async def chunk_source():
                for path in chunk_paths:
                    async for block in iter_file(path, self.read_size):
                        yield block

            written = await stream_to_file(chunk_source(), dest)
            verified = await checksum_file(dest, self.read_size)
        except OSError as e:
            raise AssemblyError(f"I/O error while assembling {session.file_name}: {str(e)}", details) from e

        if written != verified:
            await self._record_failure(session, verified)
            raise AssemblyError(f"{session.file_name} changed on disk during assembly", details)
        if verified.size != session.file_size:
            await self._record_failure(session, verified)
            raise AssemblyError(
                f"Size mismatch for {session.file_name}: declared {session.file_size}, got {verified.size}",
                dict(details, declaredSize=session.file_size, actualSize=verified.size),
            )
        if session.declared_checksum and verified.checksum != session.declared_checksum:
            await self._record_failure(session, verified)
            raise AssemblyError(
                f"Checksum mismatch for {session.file_name}",
                dict(details, declaredChecksum=session.declared_checksum, actualChecksum=verified.checksum),
            )
        return verified

    async def _record_failure(self, session: UploadSession, result: ChecksumResult) -> None:
        await run_in_threadpool(
            self.gateway.upsert_backup_file, session.backup_id, session.file_name,
            result.size, result.checksum, "failed",
        )

    def _commit(self, backup: BackupRecord, failures: Dict[str, str]) -> BackupSummary:
        files = self.gateway.list_backup_files(backup.id)
        uploaded = [f for f in files if f.status == "uploaded"]
        files_count = len(uploaded)
        total_size = sum(f.file_size for f in uploaded)
        log_metadata = {
            "backupId": backup.id,
            "backupName": backup.backup_name,
            "version": backup.version,
            "filesCount": files_count,
            "totalSize": total_size,
        }

        if failures:
            for f in files:
                if f.file_path in failures and f.status != "failed":
                    self.gateway.upsert_backup_file(backup.id, f.file_path, f.file_size, f.checksum, "failed")
            self.gateway.update_backup_status(backup.id, "failed", files_count, total_size)
            self.gateway.create_sync_log(
                backup.client_id,
                "backup",
                "failed",
                f"Finalize failed for {len(failures)} file(s) (v{backup.version})",
                dict(log_metadata, failures=failures),
            )
            raise AssemblyError(
                f"Failed to assemble {len(failures)} file(s) for {backup.backup_name} v{backup.version}",
                {"failures": failures},
            )

        not_uploaded = [f.file_path for f in files if f.status != "uploaded"]
        if not_uploaded:
            raise IncompleteUpload(
                f"{len(not_uploaded)} file(s) of {backup.backup_name} v{backup.version} are not uploaded",
                {"files": not_uploaded},
            )

        self.gateway.update_backup_status(backup.id, "completed", files_count, total_size)
        self.gateway.create_sync_log(
            backup.client_id,
            "backup",
            "success",
            f"Backed up {files_count} files (v{backup.version})",
            log_metadata,
        )
        logger.info(
            f"Finalized {backup.client_id}/{backup.backup_name} v{backup.version}: "
            f"{files_count} files, {total_size} bytes"
        )

        cleanup_old_backups(self.gateway, self.storage_dir, backup.client_id, backup.backup_name, self.max_backups)
        return summarize(self.gateway.get_backup(backup.id))
