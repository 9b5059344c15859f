"""FastAPI router for the file upload endpoint."""
import base64
import logging

from fastapi import APIRouter, File, HTTPException, UploadFile

from roomchat.chat.errors import UploadTooLarge
from roomchat.config import get_config

from .schemas import FileUploadResponse, get_file_type

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


@router.post("/upload", response_model=FileUploadResponse)
async def upload_file(file: UploadFile = File(...)) -> FileUploadResponse:
    """Accept a multipart upload and return it as an inline data URL.

    Args:
        file: The file to upload.

    Returns:
        FileUploadResponse with name, MIME type, size and data URL.

    Raises:
        HTTPException 413: If the file exceeds ``uploads.max_bytes`` (10 MiB).
    """
    max_bytes = get_config().uploads.max_bytes

    # Read one byte past the limit so oversized files are caught without
    # buffering the whole body
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        error = UploadTooLarge(
            f"File size exceeds limit of {max_bytes} bytes", limit=max_bytes
        )
        logger.info(f"Rejected upload {file.filename}: {error.message}")
        raise HTTPException(status_code=413, detail=error.to_payload())

    mime_type = file.content_type or "application/octet-stream"
    encoded = base64.b64encode(content).decode("ascii")

    logger.info(f"File uploaded: {file.filename} ({len(content)} bytes, {mime_type})")

    return FileUploadResponse(
        name=file.filename or "unnamed",
        type=mime_type,
        size=len(content),
        data=f"data:{mime_type};base64,{encoded}",
        category=get_file_type(mime_type),
    )
