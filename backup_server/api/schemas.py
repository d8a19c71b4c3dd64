from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional

class StartUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backup_name: Optional[str] = Field(None, alias="backupName")
    file_name: Optional[str] = Field(None, alias="fileName")
    file_size: Optional[int] = Field(None, alias="fileSize")
    total_chunks: Optional[int] = Field(None, alias="totalChunks")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    checksum: Optional[str] = None  # hex SHA-256 of the whole file, if the client knows it
    version: Optional[int] = None  # add the file to an existing pending version

class StartUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    session_id: str = Field(alias="sessionId")
    version: int
    message: str = "Upload session created"

class ChunkUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    uploaded_chunks: int = Field(alias="uploadedChunks")
    total_chunks: int = Field(alias="totalChunks")

class FinalizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backup_name: Optional[str] = Field(None, alias="backupName")
    version: Optional[int] = None

class BackupSummaryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    backup_id: int = Field(alias="backupId")
    backup_name: str = Field(alias="backupName")
    version: int
    files_count: int = Field(alias="filesCount")
    total_size: int = Field(alias="totalSize")
    timestamp: datetime
    status: str
