"""Enhancement job queue (Redis/RQ), dispatchers and the background job runner."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import build_engine
from models.photo import PhotoStatus
from services.context import ServiceContext, build_services
from services.errors import ConflictError, NotFoundError, PermanentFailure

logger = logging.getLogger(__name__)

ENHANCEMENT_QUEUE_NAME = "enhancement_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def _job_timeout_seconds() -> int:
    attempts = max(int(settings.ENHANCEMENT_MAX_ATTEMPTS), 1)
    per_attempt = float(settings.ENHANCEMENT_TIMEOUT_SECONDS) + float(settings.ENHANCEMENT_BACKOFF_CAP_SECONDS)
    return int(attempts * per_attempt) + 120


def get_enhancement_queue() -> Queue:
    """Return the configured enhancement queue."""
    return Queue(
        name=ENHANCEMENT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=_job_timeout_seconds(),
    )


def enqueue_enhancement_job(photo_id: str) -> Job:
    """Enqueue one enhancement attempt.

    No RQ-level retry: the invoker retries transient provider failures itself, and a
    re-run job would find the photo already resolved.
    """
    queue = get_enhancement_queue()
    return queue.enqueue(
        "services.enhancement_queue.process_enhancement_job",
        photo_id,
        job_id=f"enhance:{photo_id}:{uuid.uuid4().hex[:8]}",
        job_timeout=_job_timeout_seconds(),
        result_ttl=86400,
        failure_ttl=86400,
    )


class QueueDispatcher:
    """Hands enhancement jobs to the RQ worker."""

    async def dispatch(self, photo_id: str) -> None:
        job = await asyncio.to_thread(enqueue_enhancement_job, photo_id)
        logger.info("Queued enhancement job %s for photo %s", job.id, photo_id)


class LocalTaskDispatcher:
    """Runs enhancement jobs as asyncio tasks in the API process."""

    def __init__(self, services: ServiceContext):
        self.services = services
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, photo_id: str) -> None:
        task = asyncio.create_task(run_enhancement_job(self.services, photo_id))
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Local enhancement task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for in-flight tasks to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def make_dispatcher(services: ServiceContext):
    if services.settings.ENHANCEMENT_DISPATCH_MODE == "local":
        return LocalTaskDispatcher(services)
    return QueueDispatcher()


async def _record_failure(services: ServiceContext, photo_id: str, reason: str, retryable: bool) -> Optional[str]:
    async with services.session_maker() as db:
        try:
            photo = await services.lifecycle(db).on_enhancement_failed(photo_id, reason, retryable)
        except ConflictError:
            logger.warning("Photo %s already left PROCESSING; failure not recorded", photo_id)
            return None
        return photo.status


async def run_enhancement_job(services: ServiceContext, photo_id: str) -> Optional[str]:
    """Enhance one PROCESSING photo and report the outcome to the lifecycle manager.

    Returns the final photo status, or None when there was nothing to do.
    """
    async with services.session_maker() as db:
        try:
            photo = await services.lifecycle(db).get_photo(photo_id)
        except NotFoundError:
            logger.warning("Enhancement job for missing photo %s skipped", photo_id)
            return None
        if photo.status != PhotoStatus.PROCESSING.value:
            logger.info("Photo %s is %s; enhancement job skipped", photo_id, photo.status)
            return None
        asset_ref = photo.original_asset_ref
        mode = photo.enhancement_mode
        mime_type = photo.original_mime_type

    try:
        original = await services.storage.get_asset(asset_ref)
    except NotFoundError:
        return await _record_failure(services, photo_id, "Original photo is no longer available.", retryable=False)

    try:
        enhanced = await services.invoker().invoke(original, mode, mime_type=mime_type)
    except PermanentFailure as exc:
        return await _record_failure(services, photo_id, exc.message, exc.retryable)
    except Exception:
        logger.exception("Unexpected error while enhancing photo %s", photo_id)
        return await _record_failure(services, photo_id, "Unexpected enhancement error.", retryable=True)

    async with services.session_maker() as db:
        try:
            photo = await services.lifecycle(db).on_enhancement_succeeded(photo_id, enhanced)
        except ConflictError:
            logger.warning("Photo %s left PROCESSING before its result arrived; output discarded", photo_id)
            return None
        return photo.status


async def process_enhancement_job_async(photo_id: str) -> Optional[str]:
    # Job-scoped engine: each RQ job runs in its own event loop.
    engine = build_engine(settings.DATABASE_URL)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        return await run_enhancement_job(build_services(settings, session_maker), photo_id)
    finally:
        await engine.dispose()


def process_enhancement_job(photo_id: str) -> Optional[str]:
    """RQ entrypoint for enhancement jobs."""
    logging.basicConfig(level=settings.LOG_LEVEL)
    return asyncio.run(process_enhancement_job_async(photo_id))


async def recover_stalled_enhancements(services: ServiceContext, max_age_minutes: int = 30) -> int:
    """Fail and refund photos left PROCESSING after restarts/worker interruptions."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with services.session_maker() as db:
        return await services.lifecycle(db).recover_stalled(cutoff)


async def purge_expired_photos(services: ServiceContext) -> int:
    async with services.session_maker() as db:
        return await services.lifecycle(db).purge_expired()
