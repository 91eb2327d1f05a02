"""Explicit service wiring shared by the API process and worker jobs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from services.credits import CreditLedger
from services.enhancement import EnhancementInvoker, EnhancementProvider, build_enhancement_provider
from services.lifecycle import EnhancementDispatcher, PhotoLifecycleManager
from services.quota import QuotaEnforcer
from services.storage import LocalAssetStorage
from services.webhooks import PaymentWebhookHandler


@dataclass
class ServiceContext:
    """Long-lived collaborators plus factories for session-scoped services."""

    settings: Settings
    session_maker: async_sessionmaker
    storage: LocalAssetStorage
    provider: EnhancementProvider
    dispatcher: Optional[EnhancementDispatcher] = None

    def ledger(self, db: AsyncSession) -> CreditLedger:
        return CreditLedger(db, unlimited_credits=self.settings.UNLIMITED_CREDITS)

    def quota(self, db: AsyncSession) -> QuotaEnforcer:
        return QuotaEnforcer(self.ledger(db), free_tier_limit=self.settings.FREE_TIER_LIMIT)

    def lifecycle(self, db: AsyncSession) -> PhotoLifecycleManager:
        return PhotoLifecycleManager(
            db,
            self.quota(db),
            self.storage,
            dispatcher=self.dispatcher,
            max_upload_bytes=self.settings.MAX_PHOTO_UPLOAD_BYTES,
            retention_days=self.settings.PHOTO_RETENTION_DAYS,
        )

    def invoker(self) -> EnhancementInvoker:
        return EnhancementInvoker(
            self.provider,
            max_attempts=self.settings.ENHANCEMENT_MAX_ATTEMPTS,
            backoff_base=self.settings.ENHANCEMENT_BACKOFF_BASE_SECONDS,
            backoff_cap=self.settings.ENHANCEMENT_BACKOFF_CAP_SECONDS,
            default_timeout=self.settings.ENHANCEMENT_TIMEOUT_SECONDS,
        )

    def webhooks(self, db: AsyncSession) -> PaymentWebhookHandler:
        return PaymentWebhookHandler(
            db,
            self.ledger(db),
            chargeback_policy=self.settings.CHARGEBACK_POLICY,
        )


def build_services(
    settings: Settings,
    session_maker: async_sessionmaker,
    *,
    provider: Optional[EnhancementProvider] = None,
) -> ServiceContext:
    return ServiceContext(
        settings=settings,
        session_maker=session_maker,
        storage=LocalAssetStorage(settings.PHOTO_STORAGE_DIR),
        provider=provider or build_enhancement_provider(settings),
    )


def get_services(request: Request) -> ServiceContext:
    """FastAPI dependency returning the context built in the app lifespan."""
    return request.app.state.services
