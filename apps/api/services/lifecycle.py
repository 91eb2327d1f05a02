"""Photo state machine: upload, enhancement start/retry and outcome handling."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from sqlalchemy import case, delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.photo import ChargeSource, EnhancementMode, Photo, PhotoStatus
from models.user import User
from services.enhancement import EnhancedAsset, detect_image_mime
from services.errors import (
    ConflictError,
    DispatchError,
    NotFoundError,
    PhotoServiceError,
    ValidationError,
)
from services.quota import AuthorizationResult, QuotaEnforcer, ReleaseOutcome
from services.storage import LocalAssetStorage

logger = logging.getLogger(__name__)

MAX_PHOTO_UPLOAD_BYTES = 10 * 1024 * 1024
PHOTO_RETENTION_DAYS = 30
MAX_ERROR_REASON_LENGTH = 1000


class EnhancementDispatcher(Protocol):
    async def dispatch(self, photo_id: str) -> None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhotoLifecycleManager:
    """Owns Photo rows and every status transition.

    Transitions are compare-and-set UPDATEs on ``photos.status`` issued as the first
    statement of their transaction. The authorization taken by ``start_enhancement``
    commits together with the PROCESSING transition, so a held reservation or free
    slot always belongs to a PROCESSING photo.
    """

    def __init__(
        self,
        db: AsyncSession,
        quota: QuotaEnforcer,
        storage: LocalAssetStorage,
        *,
        dispatcher: Optional[EnhancementDispatcher] = None,
        max_upload_bytes: int = MAX_PHOTO_UPLOAD_BYTES,
        retention_days: int = PHOTO_RETENTION_DAYS,
    ):
        self.db = db
        self.quota = quota
        self.storage = storage
        self.dispatcher = dispatcher
        self.max_upload_bytes = int(max_upload_bytes)
        self.retention_days = int(retention_days)

    async def create_photo(self, owner_id: str, original: bytes, mode: EnhancementMode | str) -> Photo:
        try:
            mode_value = EnhancementMode(mode)
        except ValueError:
            allowed = ", ".join(item.value for item in EnhancementMode)
            raise ValidationError(f"Unsupported enhancement mode '{mode}'. Expected one of: {allowed}.") from None
        if not original:
            raise ValidationError("Uploaded photo is empty.")
        size = len(original)
        if size > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise ValidationError(f"Photo exceeds the {limit_mb:g} MB upload limit.")
        mime_type = detect_image_mime(original)
        if mime_type is None:
            raise ValidationError("Unsupported image type. Upload a JPEG, PNG or WebP photo.")

        claimed = await self.db.execute(
            update(User)
            .where(
                User.id == owner_id,
                User.storage_used_bytes + size <= User.storage_limit_bytes,
            )
            .values(storage_used_bytes=User.storage_used_bytes + size)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            await self._require_user(owner_id)
            raise ValidationError("Storage limit reached. Delete photos to free space.")

        asset_ref: Optional[str] = None
        try:
            asset_ref = await self.storage.put_asset(original, prefix="originals", mime_type=mime_type)
            now = _utcnow()
            photo = Photo(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                original_asset_ref=asset_ref,
                original_mime_type=mime_type,
                original_size_bytes=size,
                status=PhotoStatus.PENDING.value,
                enhancement_mode=mode_value.value,
                free_slot_held=False,
                attempt_count=0,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(days=self.retention_days),
            )
            self.db.add(photo)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            if asset_ref:
                await self.storage.delete_asset(asset_ref)
            raise

        logger.info("Photo %s uploaded by user %s (%s bytes, mode=%s)", photo.id, owner_id, size, mode_value.value)
        return photo

    async def get_photo(self, photo_id: str, *, owner_id: Optional[str] = None) -> Photo:
        """Load a photo; one owned by someone else is reported as missing."""
        result = await self.db.execute(
            select(Photo).where(Photo.id == photo_id).execution_options(populate_existing=True)
        )
        photo = result.scalar_one_or_none()
        if photo is None or (owner_id is not None and photo.owner_id != owner_id):
            raise NotFoundError(f"Photo {photo_id} not found.")
        return photo

    async def list_photos(self, owner_id: str, *, limit: int = 50, offset: int = 0) -> List[Photo]:
        result = await self.db.execute(
            select(Photo)
            .where(Photo.owner_id == owner_id)
            .order_by(Photo.created_at.desc())
            .limit(max(min(int(limit), 200), 1))
            .offset(max(int(offset), 0))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def start_enhancement(self, photo_id: str, *, owner_id: Optional[str] = None) -> Photo:
        return await self._begin_processing(photo_id, PhotoStatus.PENDING, owner_id=owner_id)

    async def retry(self, photo_id: str, *, owner_id: Optional[str] = None) -> Photo:
        """Re-run a FAILED photo under a fresh authorization."""
        return await self._begin_processing(photo_id, PhotoStatus.FAILED, owner_id=owner_id)

    async def on_enhancement_succeeded(self, photo_id: str, enhanced: EnhancedAsset) -> Photo:
        enhanced_ref = await self.storage.put_asset(enhanced.data, prefix="enhanced", mime_type=enhanced.mime_type)
        now = _utcnow()
        try:
            await self._transition_from_processing(
                photo_id,
                status=PhotoStatus.COMPLETED.value,
                enhanced_asset_ref=enhanced_ref,
                enhanced_mime_type=enhanced.mime_type,
                enhanced_size_bytes=enhanced.size_bytes,
                processing_completed_at=now,
                error_reason=None,
                last_error_retryable=None,
                updated_at=now,
            )
            photo = await self.get_photo(photo_id)
            await self.quota.release(photo.owner_id, self._authorization_of(photo), ReleaseOutcome.SUCCESS)
            photo.credit_reservation_id = None
            photo.free_slot_held = False
            # The paid-for output is always kept, so usage may pass the limit; uploads
            # are refused until expired photos are purged.
            await self.db.execute(
                update(User)
                .where(User.id == photo.owner_id)
                .values(storage_used_bytes=User.storage_used_bytes + enhanced.size_bytes)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self.storage.delete_asset(enhanced_ref)
            raise

        logger.info("Photo %s enhanced (%s bytes, %s attempts)", photo_id, enhanced.size_bytes, enhanced.attempts)
        return photo

    async def on_enhancement_failed(self, photo_id: str, reason: str, retryable: bool) -> Photo:
        now = _utcnow()
        try:
            await self._transition_from_processing(
                photo_id,
                status=PhotoStatus.FAILED.value,
                error_reason=(reason or "Enhancement failed.")[:MAX_ERROR_REASON_LENGTH],
                last_error_retryable=bool(retryable),
                processing_completed_at=now,
                updated_at=now,
            )
            photo = await self.get_photo(photo_id)
            await self.quota.release(photo.owner_id, self._authorization_of(photo), ReleaseOutcome.FAILURE)
            photo.credit_reservation_id = None
            photo.free_slot_held = False
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Photo %s failed (retryable=%s): %s", photo_id, retryable, reason)
        return photo

    async def recover_stalled(self, cutoff: datetime) -> int:
        """Fail and release photos that have been PROCESSING since before ``cutoff``."""
        result = await self.db.execute(
            select(Photo.id).where(
                Photo.status == PhotoStatus.PROCESSING.value,
                (Photo.processing_started_at.is_(None)) | (Photo.processing_started_at < cutoff),
            )
        )
        stalled_ids = list(result.scalars().all())
        recovered = 0
        for photo_id in stalled_ids:
            try:
                await self.on_enhancement_failed(
                    photo_id,
                    "Enhancement did not finish in time; it was stopped and any credit refunded.",
                    retryable=True,
                )
            except ConflictError:
                continue
            recovered += 1
        if recovered:
            logger.warning("Recovered %s stalled enhancement(s)", recovered)
        return recovered

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired photos that are not PROCESSING, returning their storage quota."""
        cutoff = now or _utcnow()
        result = await self.db.execute(
            select(Photo.id, Photo.owner_id, Photo.original_asset_ref, Photo.original_size_bytes,
                   Photo.enhanced_asset_ref, Photo.enhanced_size_bytes)
            .where(
                Photo.expires_at <= cutoff,
                Photo.status != PhotoStatus.PROCESSING.value,
            )
        )
        candidates = result.all()
        purged = 0
        for row in candidates:
            deleted = await self.db.execute(
                delete(Photo)
                .where(Photo.id == row.id, Photo.status != PhotoStatus.PROCESSING.value)
                .execution_options(synchronize_session=False)
            )
            if deleted.rowcount != 1:
                await self.db.rollback()
                continue
            freed = int(row.original_size_bytes or 0) + int(row.enhanced_size_bytes or 0)
            await self.db.execute(
                update(User)
                .where(User.id == row.owner_id)
                .values(
                    storage_used_bytes=case(
                        (User.storage_used_bytes > freed, User.storage_used_bytes - freed),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            for asset_ref in (row.original_asset_ref, row.enhanced_asset_ref):
                if asset_ref:
                    await self.storage.delete_asset(asset_ref)
            purged += 1
        if purged:
            logger.info("Purged %s expired photo(s)", purged)
        return purged

    async def _begin_processing(
        self,
        photo_id: str,
        expected: PhotoStatus,
        *,
        owner_id: Optional[str] = None,
    ) -> Photo:
        now = _utcnow()
        conditions = [Photo.id == photo_id, Photo.status == expected.value]
        if owner_id is not None:
            conditions.append(Photo.owner_id == owner_id)
        claimed = await self.db.execute(
            update(Photo)
            .where(*conditions)
            .values(
                status=PhotoStatus.PROCESSING.value,
                processing_started_at=now,
                processing_completed_at=None,
                error_reason=None,
                last_error_retryable=None,
                attempt_count=Photo.attempt_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            photo = await self.get_photo(photo_id, owner_id=owner_id)
            raise ConflictError(f"Photo {photo_id} is {photo.status}; expected {expected.value}.")

        photo = await self.get_photo(photo_id)
        try:
            authorization = await self.quota.authorize(photo.owner_id, photo_id=photo.id)
        except PhotoServiceError:
            await self.db.rollback()
            raise

        photo.credit_reservation_id = authorization.reservation_id
        photo.free_slot_held = authorization.used_free_slot
        photo.charged_with = (
            ChargeSource.FREE_TIER.value if authorization.used_free_slot else ChargeSource.CREDIT.value
        )
        await self.db.commit()
        logger.info(
            "Photo %s processing (attempt %s, charged with %s)",
            photo.id,
            photo.attempt_count,
            photo.charged_with,
        )

        await self._dispatch(photo)
        return photo

    async def _dispatch(self, photo: Photo) -> None:
        if self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(photo.id)
        except Exception as exc:
            logger.exception("Could not dispatch enhancement for photo %s", photo.id)
            await self.on_enhancement_failed(photo.id, "Enhancement queue unavailable.", retryable=True)
            raise DispatchError("Enhancement queue unavailable. Try again shortly.") from exc

    async def _transition_from_processing(self, photo_id: str, **values) -> None:
        result = await self.db.execute(
            update(Photo)
            .where(Photo.id == photo_id, Photo.status == PhotoStatus.PROCESSING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            photo = await self.get_photo(photo_id)
            raise ConflictError(f"Photo {photo_id} is {photo.status}; expected {PhotoStatus.PROCESSING.value}.")

    async def _require_user(self, user_id: str) -> None:
        result = await self.db.execute(select(User.id).where(User.id == user_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundError(f"User {user_id} not found.")

    @staticmethod
    def _authorization_of(photo: Photo) -> AuthorizationResult:
        return AuthorizationResult(
            used_free_slot=bool(photo.free_slot_held),
            reservation_id=photo.credit_reservation_id,
        )
