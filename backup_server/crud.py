"""Backup metadata gateway backed by the relational store."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from backup_server import models
from backup_server.core.exceptions import BackupNotFound, VersionConflict


@dataclass
class BackupRecord:
    id: int
    client_id: str
    backup_name: str
    version: int
    timestamp: datetime
    status: str
    files_count: int
    total_size: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BackupFileRecord:
    backup_id: int
    file_path: str
    file_size: int
    checksum: Optional[str]
    status: str
    uploaded_at: datetime


def _to_backup_record(backup: models.Backup) -> BackupRecord:
    return BackupRecord(
        id=backup.id,
        client_id=backup.client_id,
        backup_name=backup.backup_name,
        version=backup.version,
        timestamp=backup.timestamp,
        status=backup.status,
        files_count=backup.files_count or 0,
        total_size=backup.total_size or 0,
        metadata=dict(backup.metadata_ or {}),
    )


def _to_file_record(backup_file: models.BackupFile) -> BackupFileRecord:
    return BackupFileRecord(
        backup_id=backup_file.backup_id,
        file_path=backup_file.file_path,
        file_size=backup_file.file_size or 0,
        checksum=backup_file.checksum,
        status=backup_file.status,
        uploaded_at=backup_file.uploaded_at,
    )


class BackupGateway:
    """
    Narrow interface the upload core uses to create and update backup,
    file and audit records. Every call runs in its own database session,
    so records are returned as plain dataclasses.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create_backup(self, client_id: str, backup_name: str, version: int,
                      timestamp: datetime, metadata: Optional[Dict[str, Any]] = None) -> int:
        with self._session_factory() as db:
            backup = models.Backup(
                client_id=client_id,
                backup_name=backup_name,
                version=version,
                timestamp=timestamp,
                status="pending",
                files_count=0,
                total_size=0,
                metadata_=metadata or {},
            )
            db.add(backup)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise VersionConflict(
                    f"Version {version} already exists for {client_id}/{backup_name}",
                    {"client_id": client_id, "backup_name": backup_name, "version": version},
                ) from e
            return backup.id

    def find_backup(self, client_id: str, backup_name: str, version: int) -> Optional[BackupRecord]:
        with self._session_factory() as db:
            backup = (
                db.query(models.Backup)
                .filter(
                    models.Backup.client_id == client_id,
                    models.Backup.backup_name == backup_name,
                    models.Backup.version == version,
                )
                .first()
            )
            return _to_backup_record(backup) if backup else None

    def get_backup(self, backup_id: int) -> Optional[BackupRecord]:
        with self._session_factory() as db:
            backup = db.get(models.Backup, backup_id)
            return _to_backup_record(backup) if backup else None

    def update_backup_status(self, backup_id: int, status: str,
                             files_count: Optional[int] = None, total_size: Optional[int] = None) -> None:
        with self._session_factory() as db:
            backup = db.get(models.Backup, backup_id)
            if backup is None:
                raise BackupNotFound(f"Backup {backup_id} not found")
            backup.status = status
            if files_count is not None:
                backup.files_count = files_count
            if total_size is not None:
                backup.total_size = total_size
            db.commit()

    def upsert_backup_file(self, backup_id: int, file_path: str, file_size: int,
                           checksum: Optional[str], status: str) -> None:
        with self._session_factory() as db:
            backup_file = (
                db.query(models.BackupFile)
                .filter(models.BackupFile.backup_id == backup_id, models.BackupFile.file_path == file_path)
                .first()
            )
            if backup_file:
                backup_file.file_size = file_size
                backup_file.checksum = checksum
                backup_file.status = status
                backup_file.uploaded_at = datetime.utcnow()
            else:
                backup_file = models.BackupFile(
                    backup_id=backup_id,
                    file_path=file_path,
                    file_size=file_size,
                    checksum=checksum,
                    status=status,
                )
                db.add(backup_file)
            db.commit()

    def list_backup_files(self, backup_id: int) -> List[BackupFileRecord]:
        with self._session_factory() as db:
            files = (
                db.query(models.BackupFile)
                .filter(models.BackupFile.backup_id == backup_id)
                .order_by(models.BackupFile.file_path)
                .all()
            )
            return [_to_file_record(f) for f in files]

    def max_version(self, client_id: str, backup_name: str) -> Optional[int]:
        with self._session_factory() as db:
            return (
                db.query(func.max(models.Backup.version))
                .filter(models.Backup.client_id == client_id, models.Backup.backup_name == backup_name)
                .scalar()
            )

    def list_completed_backups(self, client_id: str, backup_name: str) -> List[BackupRecord]:
        """
        Completed backups for a (client, name) pair, newest version first.
        """
        with self._session_factory() as db:
            backups = (
                db.query(models.Backup)
                .filter(
                    models.Backup.client_id == client_id,
                    models.Backup.backup_name == backup_name,
                    models.Backup.status == "completed",
                )
                .order_by(models.Backup.version.desc())
                .all()
            )
            return [_to_backup_record(b) for b in backups]

    def delete_backup(self, backup_id: int) -> None:
        with self._session_factory() as db:
            backup = db.get(models.Backup, backup_id)
            if backup is not None:
                db.delete(backup)
                db.commit()

    def create_sync_log(self, client_id: str, action: str, status: str, message: str,
                        metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._session_factory() as db:
            db.add(models.SyncLog(
                client_id=client_id,
                action=action,
                status=status,
                message=message,
                metadata_=metadata or {},
            ))
            db.commit()

    def list_sync_logs(self, client_id: str) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            logs = (
                db.query(models.SyncLog)
                .filter(models.SyncLog.client_id == client_id)
                .order_by(models.SyncLog.id)
                .all()
            )
            return [
                {
                    "action": log.action,
                    "status": log.status,
                    "message": log.message,
                    "metadata": dict(log.metadata_ or {}),
                    "timestamp": log.timestamp,
                }
                for log in logs
            ]
