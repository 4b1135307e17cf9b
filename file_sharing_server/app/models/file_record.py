from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class FileRecord(BaseModel):
    """Metadata for one stored file.

    Records are never changed after creation; the registry only adds or
    removes them whole.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    size: int
    mime_type: str = Field(alias="mimeType")
    uploaded_at: datetime = Field(alias="uploadedAt")


class UploadResponse(BaseModel):
    success: bool = True
    files: List[FileRecord]


class SuccessResponse(BaseModel):
    success: bool = True
