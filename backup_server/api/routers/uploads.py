from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from backup_server.api.schemas import (
    BackupSummaryResponse,
    ChunkUploadResponse,
    FinalizeRequest,
    StartUploadRequest,
    StartUploadResponse,
)
from backup_server.api.dependencies import get_backup_service
from backup_server.core.auth import get_current_client
from backup_server.core.exceptions import ValidationError
from backup_server.services.backup_service import BackupService
from backup_server.services.finalize_service import BackupSummary

router = APIRouter(prefix="/backup", tags=["backup"])

def _summary_response(summary: BackupSummary, message: str) -> BackupSummaryResponse:
    return BackupSummaryResponse(
        message=message,
        backup_id=summary.backup_id,
        backup_name=summary.backup_name,
        version=summary.version,
        files_count=summary.files_count,
        total_size=summary.total_size,
        timestamp=summary.timestamp,
        status=summary.status,
    )

@router.post("/upload/start", response_model=StartUploadResponse)
async def start_upload(
    body: StartUploadRequest,
    client_id: str = Depends(get_current_client),
    backup_service: BackupService = Depends(get_backup_service)
):
    """
    Open a chunked upload session and reserve the backup version.
    """
    session = await backup_service.start_upload(
        client_id=client_id,
        backup_name=body.backup_name,
        file_name=body.file_name,
        file_size=body.file_size,
        total_chunks=body.total_chunks,
        metadata=body.metadata,
        checksum=body.checksum,
        version=body.version,
    )
    return StartUploadResponse(session_id=session.session_id, version=session.version)

@router.post("/upload/chunk", response_model=ChunkUploadResponse)
async def upload_chunk(
    session_id: Optional[str] = Form(None, alias="sessionId"),
    chunk_index: Optional[str] = Form(None, alias="chunkIndex"),
    chunk: Optional[UploadFile] = File(None),
    client_id: str = Depends(get_current_client),
    backup_service: BackupService = Depends(get_backup_service)
):
    """
    Store one chunk of an upload session.
    """
    if not session_id or chunk_index is None or chunk is None:
        raise ValidationError("sessionId, chunkIndex, and chunk are required")

    chunk_data = await chunk.read()
    uploaded_chunks, total_chunks = await backup_service.upload_chunk(session_id, chunk_index, chunk_data, client_id)
    return ChunkUploadResponse(uploaded_chunks=uploaded_chunks, total_chunks=total_chunks)

@router.post("/finalize", response_model=BackupSummaryResponse)
async def finalize_backup(
    body: FinalizeRequest,
    client_id: str = Depends(get_current_client),
    backup_service: BackupService = Depends(get_backup_service)
):
    """
    Assemble, verify and commit every file of a backup version.
    """
    if not body.backup_name or not body.version:
        raise ValidationError("backupName and version are required")

    summary = await backup_service.finalize(client_id, body.backup_name, body.version)
    return _summary_response(summary, "Backup finalized")

@router.post("/upload", response_model=BackupSummaryResponse)
async def upload_file(
    request: Request,
    backup_name: str = Query("", alias="backupName"),
    file_name: str = Query("", alias="fileName"),
    client_id: str = Depends(get_current_client),
    backup_service: BackupService = Depends(get_backup_service)
):
    """
    Upload a whole file in the request body as a new backup version.

    The file name and backup name travel as ``backupName`` and ``fileName``
    query parameters; the body is streamed to disk.
    """
    if not backup_name or not file_name:
        raise ValidationError("backupName and fileName are required")

    summary = await backup_service.upload_file(client_id, backup_name, file_name, request.stream())
    return _summary_response(summary, "Backup completed")
