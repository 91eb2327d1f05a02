from unittest.mock import MagicMock, patch

import pytest

from services.enhancement_queue import (
    LocalTaskDispatcher,
    QueueDispatcher,
    enqueue_enhancement_job,
    make_dispatcher,
    purge_expired_photos,
    recover_stalled_enhancements,
    run_enhancement_job,
)
from services.errors import PermanentFailure


JOB_USER_ID = "job-user"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 64


class _RejectingProvider:
    name = "rejecting"

    async def enhance(self, asset_bytes, mode, *, mime_type, timeout):
        raise PermanentFailure("Provider rejected the image (400): bad request")


class _JpegProvider:
    name = "jpeg"

    async def enhance(self, asset_bytes, mode, *, mime_type, timeout):
        return JPEG_BYTES


async def _processing_photo(services, mode: str = "enhance") -> str:
    async with services.session_maker() as db:
        lifecycle = services.lifecycle(db)
        photo = await lifecycle.create_photo(JOB_USER_ID, PNG_BYTES, mode)
        await lifecycle.start_enhancement(photo.id)
        return photo.id


async def _photo(services, photo_id: str):
    async with services.session_maker() as db:
        return await services.lifecycle(db).get_photo(photo_id)


@pytest.mark.asyncio
async def test_job_completes_photo_with_provider_output(services, make_user):
    await make_user(JOB_USER_ID)
    services.provider = _JpegProvider()
    photo_id = await _processing_photo(services)

    assert await run_enhancement_job(services, photo_id) == "COMPLETED"

    photo = await _photo(services, photo_id)
    assert photo.enhanced_mime_type == "image/jpeg"
    assert await services.storage.get_asset(photo.enhanced_asset_ref) == JPEG_BYTES


@pytest.mark.asyncio
async def test_permanent_failure_refunds_credit_to_previous_balance(services, make_user, load_user):
    await make_user(JOB_USER_ID, credits=1, free_used=2)
    services.provider = _RejectingProvider()
    photo_id = await _processing_photo(services)
    assert (await load_user(JOB_USER_ID)).credits == 0

    assert await run_enhancement_job(services, photo_id) == "FAILED"

    photo = await _photo(services, photo_id)
    assert photo.last_error_retryable is False
    assert "rejected" in photo.error_reason
    assert (await load_user(JOB_USER_ID)).credits == 1


@pytest.mark.asyncio
async def test_missing_original_fails_without_retry_hint(services, make_user):
    await make_user(JOB_USER_ID)
    photo_id = await _processing_photo(services)
    photo = await _photo(services, photo_id)
    await services.storage.delete_asset(photo.original_asset_ref)

    assert await run_enhancement_job(services, photo_id) == "FAILED"
    assert (await _photo(services, photo_id)).last_error_retryable is False


@pytest.mark.asyncio
async def test_job_skips_photos_that_are_not_processing(services, make_user):
    await make_user(JOB_USER_ID)
    photo_id = await _processing_photo(services)
    await run_enhancement_job(services, photo_id)

    assert await run_enhancement_job(services, photo_id) is None
    assert await run_enhancement_job(services, "missing-photo") is None


@pytest.mark.asyncio
async def test_local_dispatcher_runs_job_in_background(services, make_user):
    await make_user(JOB_USER_ID)
    dispatcher = LocalTaskDispatcher(services)
    services.dispatcher = dispatcher

    photo_id = await _processing_photo(services)
    await dispatcher.drain()

    assert (await _photo(services, photo_id)).status == "COMPLETED"


@pytest.mark.asyncio
async def test_queue_dispatcher_enqueues_rq_job(services):
    queue = MagicMock()
    queue.enqueue.return_value = MagicMock(id="enhance:photo-1:abc")
    with patch("services.enhancement_queue.get_enhancement_queue", return_value=queue):
        await QueueDispatcher().dispatch("photo-1")

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.enhancement_queue.process_enhancement_job", "photo-1")
    assert kwargs["job_id"].startswith("enhance:photo-1:")
    assert "retry" not in kwargs


@pytest.mark.asyncio
async def test_dispatch_mode_selects_dispatcher(services):
    assert isinstance(make_dispatcher(services), LocalTaskDispatcher)
    services.settings.ENHANCEMENT_DISPATCH_MODE = "queue"
    assert isinstance(make_dispatcher(services), QueueDispatcher)


def test_enqueue_uses_enhancement_queue():
    queue = MagicMock()
    with patch("services.enhancement_queue.get_enhancement_queue", return_value=queue):
        enqueue_enhancement_job("photo-2")
    assert queue.enqueue.call_args.kwargs["job_timeout"] > 0


@pytest.mark.asyncio
async def test_recovery_and_purge_helpers_run_against_context(services, make_user):
    await make_user(JOB_USER_ID)
    await _processing_photo(services)

    assert await recover_stalled_enhancements(services, max_age_minutes=30) == 0
    assert await purge_expired_photos(services) == 0
