"""External AI enhancement call: providers, failure classification and retry policy."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from models.photo import EnhancementMode
from services.errors import PermanentFailure, PhotoServiceError, TransientFailure

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 2.0
BACKOFF_CAP_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 60.0

# 4xx responses that signal throttling or contention rather than a rejected input.
TRANSIENT_STATUS_CODES = {408, 409, 425, 429}

MODE_PROMPTS = {
    EnhancementMode.RESTORE: (
        "Restore this photograph: remove scratches, dust, tears and fading while keeping "
        "the people, composition and details unchanged."
    ),
    EnhancementMode.ENHANCE: (
        "Enhance this photo: improve exposure, contrast, sharpness and color balance and "
        "reduce noise without altering its content."
    ),
    EnhancementMode.COLORIZE: (
        "Colorize this black-and-white photo with natural, plausible colors while keeping "
        "every detail unchanged."
    ),
    EnhancementMode.UPSCALE: (
        "Upscale this photo to a higher resolution, recovering fine detail and sharpness "
        "without changing its content."
    ),
}

FILENAME_BY_MIME = {
    "image/jpeg": "photo.jpg",
    "image/png": "photo.png",
    "image/webp": "photo.webp",
}


def detect_image_mime(data: bytes) -> Optional[str]:
    """Identify JPEG, PNG and WebP payloads by their magic bytes."""
    if not data:
        return None
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


@dataclass(frozen=True)
class EnhancedAsset:
    data: bytes
    mime_type: str
    attempts: int = 1

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class EnhancementProvider(Protocol):
    name: str

    async def enhance(
        self,
        asset_bytes: bytes,
        mode: EnhancementMode,
        *,
        mime_type: str,
        timeout: float,
    ) -> bytes:
        ...


class OpenAIImageProvider:
    """OpenAI Images edit API. SDK retries are disabled; the invoker owns retry."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-image-1"):
        self.client = AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model

    async def enhance(
        self,
        asset_bytes: bytes,
        mode: EnhancementMode,
        *,
        mime_type: str,
        timeout: float,
    ) -> bytes:
        response = await self.client.images.edit(
            model=self.model,
            image=(FILENAME_BY_MIME.get(mime_type, "photo.png"), asset_bytes, mime_type),
            prompt=MODE_PROMPTS[EnhancementMode(mode)],
            timeout=timeout,
        )
        if not response.data or not response.data[0].b64_json:
            raise PermanentFailure("Enhancement provider returned no image data.", retryable=True)
        return base64.b64decode(response.data[0].b64_json)


class HttpEnhancementProvider:
    """Generic REST enhancement endpoint taking a multipart image and returning bytes."""

    name = "http"

    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.transport = transport

    async def enhance(
        self,
        asset_bytes: bytes,
        mode: EnhancementMode,
        *,
        mime_type: str,
        timeout: float,
    ) -> bytes:
        headers = {"X-API-KEY": self.api_key} if self.api_key else {}
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.post(
                self.endpoint_url,
                headers=headers,
                data={"mode": EnhancementMode(mode).value},
                files={"image": (FILENAME_BY_MIME.get(mime_type, "photo.png"), asset_bytes, mime_type)},
            )
            response.raise_for_status()
            return response.content


class PassthroughProvider:
    """Local fallback used when no provider is configured; returns the input unchanged."""

    name = "passthrough"

    async def enhance(
        self,
        asset_bytes: bytes,
        mode: EnhancementMode,
        *,
        mime_type: str,
        timeout: float,
    ) -> bytes:
        return asset_bytes


def build_enhancement_provider(settings) -> EnhancementProvider:
    """Pick the configured provider, falling back to passthrough without credentials."""
    if settings.ENHANCEMENT_PROVIDER == "http" and (settings.ENHANCEMENT_API_URL or "").strip():
        return HttpEnhancementProvider(settings.ENHANCEMENT_API_URL.strip(), settings.ENHANCEMENT_API_KEY)
    if settings.ENHANCEMENT_PROVIDER == "openai":
        api_key = (settings.OPENAI_API_KEY or "").strip()
        if api_key and "your_" not in api_key and api_key != "test-key":
            return OpenAIImageProvider(api_key, settings.OPENAI_IMAGE_MODEL)
    logger.warning("Using passthrough enhancement provider; enhanced output equals the original.")
    return PassthroughProvider()


def _classify_status(status_code: int, detail: str) -> PhotoServiceError:
    if status_code >= 500 or status_code in TRANSIENT_STATUS_CODES:
        return TransientFailure(f"Enhancement provider unavailable ({status_code}): {detail}")
    return PermanentFailure(f"Enhancement provider rejected the image ({status_code}): {detail}")


def classify_provider_error(exc: BaseException) -> PhotoServiceError:
    """Map a provider exception onto TransientFailure or PermanentFailure."""
    if isinstance(exc, (TransientFailure, PermanentFailure)):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransientFailure("Enhancement provider timed out.")
    if isinstance(exc, openai.APIConnectionError):
        return TransientFailure(f"Enhancement provider unreachable: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return _classify_status(exc.status_code, exc.message)
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code, exc.response.reason_phrase)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientFailure(f"Enhancement provider unreachable: {exc}")
    return PermanentFailure(f"Unexpected enhancement provider error: {exc}")


class EnhancementInvoker:
    """Calls the provider with a hard timeout and retries transient failures.

    Only PermanentFailure escapes ``invoke``; exhausted retries are reported as a
    retryable PermanentFailure so callers have a single failure type to handle.
    """

    def __init__(
        self,
        provider: EnhancementProvider,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_base = max(float(backoff_base), 0.0)
        self.backoff_cap = max(float(backoff_cap), 0.0)
        self.default_timeout = float(default_timeout)
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** max(attempt - 1, 0)), self.backoff_cap)

    async def invoke(
        self,
        original: bytes,
        mode: EnhancementMode | str,
        timeout: Optional[float] = None,
        *,
        mime_type: Optional[str] = None,
    ) -> EnhancedAsset:
        if not original:
            raise PermanentFailure("Original image is empty.")
        try:
            mode = EnhancementMode(mode)
        except ValueError:
            raise PermanentFailure(f"Unsupported enhancement mode: {mode}") from None

        limit = float(timeout or self.default_timeout)
        source_mime = mime_type or detect_image_mime(original) or "image/png"
        last_failure: Optional[PhotoServiceError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                output = await asyncio.wait_for(
                    self.provider.enhance(original, mode, mime_type=source_mime, timeout=limit),
                    timeout=limit,
                )
            except Exception as exc:
                failure = classify_provider_error(exc)
                if isinstance(failure, PermanentFailure):
                    logger.warning(
                        "Enhancement attempt %s/%s failed permanently: %s",
                        attempt,
                        self.max_attempts,
                        failure.message,
                    )
                    if failure is exc:
                        raise
                    raise failure from exc
                last_failure = failure
                logger.warning(
                    "Enhancement attempt %s/%s failed transiently: %s",
                    attempt,
                    self.max_attempts,
                    failure.message,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_delay(attempt))
                continue
            return self._accept(output, attempt)

        detail = last_failure.message if last_failure is not None else "unknown error"
        raise PermanentFailure(
            f"Enhancement failed after {self.max_attempts} attempts: {detail}",
            retryable=True,
        ) from last_failure

    def _accept(self, output: bytes, attempt: int) -> EnhancedAsset:
        if not isinstance(output, (bytes, bytearray)) or not output:
            raise PermanentFailure("Enhancement provider returned an empty image.", retryable=True)
        mime_type = detect_image_mime(bytes(output))
        if mime_type is None:
            raise PermanentFailure("Enhancement provider returned an unrecognised image type.", retryable=True)
        return EnhancedAsset(data=bytes(output), mime_type=mime_type, attempts=attempt)
