import logging
from datetime import datetime

from fastapi import APIRouter, status, HTTPException, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel

from readingsync.auth.dependencies import get_current_user
from readingsync.schemas.auth import CurrentUser
from readingsync.services.storage_service import (
    PhotoValidationError,
    StorageError,
    StorageService,
    get_storage_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PhotoUploadResponse(BaseModel):
    path: str
    size: int
    content_type: str
    uploaded_at: datetime


@router.post("", response_model=PhotoUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_photo(
        client_id: str = Form(..., min_length=1, max_length=255),
        file: UploadFile = File(...),
        current_user: CurrentUser = Depends(get_current_user),
        storage: StorageService = Depends(get_storage_service),
):
    """
    Upload the photo of a queued reading

    The object key is derived from the reading's client id, so replays overwrite
    the same object instead of creating orphans.
    """
    content = await file.read()
    try:
        result = storage.upload_reading_photo(current_user.tenant_id, client_id, content, file.content_type)
    except PhotoValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Photo storage unavailable: {e}")
    return PhotoUploadResponse(**result)


@router.get("/download-url")
async def get_download_url(
        path: str = Query(..., min_length=1),
        expires_in: int = Query(3600, ge=60, le=86400),
        current_user: CurrentUser = Depends(get_current_user),
        storage: StorageService = Depends(get_storage_service),
):
    """Presigned URL for a photo owned by the caller's tenant"""
    if not path.startswith(f"readings/{current_user.tenant_id}/"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Photo not found")
    try:
        url = storage.generate_presigned_download_url(path, expires_in)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {"path": path, "url": url, "expires_in": expires_in}
