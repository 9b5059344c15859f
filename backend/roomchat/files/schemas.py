"""Pydantic schemas for file upload functionality.

- FileUploadResponse: API response after a successful upload
- FileType: Enum for categorizing files (image, pdf, audio, other)
"""
from enum import Enum

from pydantic import BaseModel, Field


class FileType(str, Enum):
    """Supported file type categories.

    Files are categorized by MIME type into these groups:
    - IMAGE: JPEG, PNG, GIF, WebP, SVG
    - PDF: PDF documents
    - AUDIO: MP3, WAV, OGG, M4A, FLAC
    - OTHER: All other file types
    """
    IMAGE = "image"
    PDF = "pdf"
    AUDIO = "audio"
    OTHER = "other"


class FileUploadResponse(BaseModel):
    """Response after successful file upload.

    Field names match the ``send_file_message`` frame so the client can
    forward the response unchanged.
    """
    name: str = Field(..., description="Original filename")
    type: str = Field(..., description="MIME type")
    size: int = Field(..., description="File size in bytes")
    data: str = Field(..., description="Base64 data URL of the content")
    category: FileType = Field(..., description="File type category")


# Allowed MIME types by category
ALLOWED_MIME_TYPES = {
    FileType.IMAGE: [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    ],
    FileType.PDF: [
        "application/pdf",
    ],
    FileType.AUDIO: [
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/ogg",
        "audio/mp4",
        "audio/x-m4a",
        "audio/flac",
    ],
}


def get_file_type(mime_type: str) -> FileType:
    """Determine file type category from MIME type.

    Examples:
        >>> get_file_type("image/jpeg")
        <FileType.IMAGE: 'image'>
        >>> get_file_type("text/plain")
        <FileType.OTHER: 'other'>
    """
    for file_type, mime_types in ALLOWED_MIME_TYPES.items():
        if mime_type in mime_types:
            return file_type
    return FileType.OTHER
