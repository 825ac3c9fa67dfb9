"""Pydantic models for msgio."""

from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, Field


class UploadErrorCode(IntEnum):
    """Outcome of a single file upload (host UPLOAD_ERR_* values)."""

    OK = 0
    INI_SIZE = 1  # exceeds upload_max_filesize
    FORM_SIZE = 2  # exceeds MAX_FILE_SIZE sent with the form
    PARTIAL = 3
    NO_FILE = 4
    NO_TMP_DIR = 6
    CANT_WRITE = 7
    EXTENSION = 8  # stopped by an extension / hook

    @property
    def is_ok(self) -> bool:
        return self is UploadErrorCode.OK


class RawUploadEntry(BaseModel):
    """One leaf of a raw, host-style file submission."""

    tmp_name: str = Field("", description="Path of the temporary file holding the upload")
    name: Optional[str] = Field(None, description="Client-provided file name")
    type: Optional[str] = Field(None, description="Client-provided media type")
    size: Optional[int] = Field(None, description="Client-reported size in bytes")
    error: UploadErrorCode = Field(UploadErrorCode.OK, description="Upload outcome")


class StreamMetadata(BaseModel):
    """Snapshot of an attached handle's metadata."""

    mode: str = Field("", description="Mode string the handle was opened with")
    seekable: bool = Field(False, description="Whether the handle supports random access")
    uri: Optional[str] = Field(None, description="File name or path behind the handle")
    blocked: bool = Field(True, description="Whether the descriptor is in blocking mode")
    stream_type: str = Field(..., description="file, pipe, socket or other")
    fileno: int = Field(..., description="Underlying file descriptor")
    eof: bool = Field(False, description="End-of-stream indicator")
