"""Photo upload, enhancement and asset download router."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.photo import EnhancementMode, Photo, PhotoStatus
from routers.auth_scope import AuthContext, ensure_user, get_auth_context
from routers.rate_limit import rate_limit
from services.context import ServiceContext, get_services
from services.errors import ConflictError

router = APIRouter()


class PhotoResponse(BaseModel):
    photo_id: str
    status: str
    enhancement_mode: str
    original_mime_type: Optional[str] = None
    original_size_bytes: int
    enhanced_mime_type: Optional[str] = None
    enhanced_size_bytes: Optional[int] = None
    has_enhanced: bool
    charged_with: Optional[str] = None
    attempt_count: int
    error_reason: Optional[str] = None
    retryable: Optional[bool] = None
    processing_started_at: Optional[str] = None
    processing_completed_at: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: Optional[str] = None


class PhotoListResponse(BaseModel):
    photos: List[PhotoResponse]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_photo(photo: Photo) -> PhotoResponse:
    return PhotoResponse(
        photo_id=photo.id,
        status=photo.status,
        enhancement_mode=photo.enhancement_mode,
        original_mime_type=photo.original_mime_type,
        original_size_bytes=int(photo.original_size_bytes or 0),
        enhanced_mime_type=photo.enhanced_mime_type,
        enhanced_size_bytes=photo.enhanced_size_bytes,
        has_enhanced=bool(photo.enhanced_asset_ref),
        charged_with=photo.charged_with,
        attempt_count=int(photo.attempt_count or 0),
        error_reason=photo.error_reason,
        retryable=photo.last_error_retryable,
        processing_started_at=_iso(photo.processing_started_at),
        processing_completed_at=_iso(photo.processing_completed_at),
        created_at=_iso(photo.created_at),
        expires_at=_iso(photo.expires_at),
    )


@router.post("", response_model=PhotoResponse, status_code=201)
async def upload_photo(
    file: UploadFile = File(...),
    mode: EnhancementMode = Form(EnhancementMode.ENHANCE),
    _rate_limit: None = Depends(rate_limit("photo_upload", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    """Store an original photo in PENDING state."""
    await ensure_user(db, auth)
    # Read one byte past the limit so oversize uploads are rejected without buffering them whole.
    data = await file.read(services.settings.MAX_PHOTO_UPLOAD_BYTES + 1)
    photo = await services.lifecycle(db).create_photo(auth.user_id, data, mode)
    return _serialize_photo(photo)


@router.get("", response_model=PhotoListResponse)
async def list_photos(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    photos = await services.lifecycle(db).list_photos(auth.user_id, limit=limit, offset=offset)
    return PhotoListResponse(photos=[_serialize_photo(photo) for photo in photos])


@router.get("/{photo_id}", response_model=PhotoResponse)
async def get_photo(
    photo_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    photo = await services.lifecycle(db).get_photo(photo_id, owner_id=auth.user_id)
    return _serialize_photo(photo)


@router.post("/{photo_id}/enhance", response_model=PhotoResponse, status_code=202)
async def start_enhancement(
    photo_id: str,
    _rate_limit: None = Depends(rate_limit("photo_enhance", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    """Authorize and queue enhancement of a PENDING photo."""
    photo = await services.lifecycle(db).start_enhancement(photo_id, owner_id=auth.user_id)
    return _serialize_photo(photo)


@router.post("/{photo_id}/retry", response_model=PhotoResponse, status_code=202)
async def retry_enhancement(
    photo_id: str,
    _rate_limit: None = Depends(rate_limit("photo_enhance", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    """Re-run a FAILED photo under a fresh authorization."""
    photo = await services.lifecycle(db).retry(photo_id, owner_id=auth.user_id)
    return _serialize_photo(photo)


@router.get("/{photo_id}/original")
async def download_original(
    photo_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    photo = await services.lifecycle(db).get_photo(photo_id, owner_id=auth.user_id)
    data = await services.storage.get_asset(photo.original_asset_ref)
    return Response(content=data, media_type=photo.original_mime_type or "application/octet-stream")


@router.get("/{photo_id}/enhanced")
async def download_enhanced(
    photo_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    services: ServiceContext = Depends(get_services),
):
    photo = await services.lifecycle(db).get_photo(photo_id, owner_id=auth.user_id)
    if photo.status != PhotoStatus.COMPLETED.value or not photo.enhanced_asset_ref:
        raise ConflictError(f"Photo {photo_id} has no enhanced image (status {photo.status}).")
    data = await services.storage.get_asset(photo.enhanced_asset_ref)
    return Response(content=data, media_type=photo.enhanced_mime_type or "application/octet-stream")
