"""tus upload tracking model"""

import json
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from sqlmodel import SQLModel, Field


class UploadStatus(str, Enum):
    """Lifecycle of a single upload"""

    IDLE = "idle"
    CREATED = "created"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = {UploadStatus.COMPLETED.value, UploadStatus.FAILED.value, UploadStatus.CANCELED.value}


class TusUpload(SQLModel, table=True):
    """Track one file's transfer to a tus server"""

    __tablename__ = "tus_uploads"

    id: str = Field(primary_key=True)
    file_name: str = Field(alias="fileName")  # Name inside the local file store
    status: str = Field(default=UploadStatus.IDLE.value, index=True)
    content_length: int = Field(default=0, alias="contentLength")
    upload_offset: int = Field(default=0, alias="uploadOffset")
    upload_location_url: Optional[str] = Field(default=None, alias="uploadLocationURL")
    upload_metadata: str = Field(default="{}", alias="uploadMetadata")  # JSON object of str -> str
    retry_count: int = Field(default=0, alias="retryCount")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=datetime.utcnow, alias="updatedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")

    def get_metadata(self) -> Dict[str, str]:
        """Decoded metadata mapping"""
        if not self.upload_metadata:
            return {}
        return json.loads(self.upload_metadata)

    @property
    def encoded_metadata(self) -> str:
        """Metadata in Upload-Metadata header form"""
        from tusupload.protocol import encode_metadata

        return encode_metadata(self.get_metadata())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def advance_offset(self, new_offset: int) -> None:
        """
        Move the acknowledged offset forward.

        Raises:
            ValueError: If the offset would decrease, exceed content_length,
                or the upload is already completed
        """
        if self.status == UploadStatus.COMPLETED.value:
            raise ValueError(f"Upload {self.id} is completed, offset is frozen")
        if new_offset < self.upload_offset:
            raise ValueError(
                f"Upload-Offset went backwards for {self.id}: {self.upload_offset} -> {new_offset}"
            )
        if new_offset > self.content_length:
            raise ValueError(
                f"Upload-Offset {new_offset} exceeds Upload-Length {self.content_length} for {self.id}"
            )
        self.upload_offset = new_offset


def encode_metadata_json(metadata: Optional[Dict[str, str]]) -> str:
    """Serialize a metadata mapping for the upload_metadata column"""
    return json.dumps({str(k): str(v) for k, v in (metadata or {}).items()}, sort_keys=True)
