"""Local filesystem implementation of the image storage collaborator."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path

from services.errors import NotFoundError

logger = logging.getLogger(__name__)

EXTENSION_BY_MIME = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


def _safe_segment(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in (value or ""))
    return cleaned or "assets"


class LocalAssetStorage:
    """Stores assets under a root directory; asset refs are root-relative keys."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path_for(self, asset_ref: str) -> Path:
        candidate = (self.root / asset_ref).resolve()
        root = self.root.resolve()
        if root != candidate and root not in candidate.parents:
            raise NotFoundError(f"Asset {asset_ref} not found.")
        return candidate

    async def put_asset(self, data: bytes, *, prefix: str, mime_type: str = "") -> str:
        extension = EXTENSION_BY_MIME.get(mime_type, ".bin")
        asset_ref = f"{_safe_segment(prefix)}/{uuid.uuid4().hex}{extension}"
        path = self._path_for(asset_ref)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".part")
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)

        await asyncio.to_thread(_write)
        return asset_ref

    async def get_asset(self, asset_ref: str) -> bytes:
        path = self._path_for(asset_ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Asset {asset_ref} not found.") from exc

    async def delete_asset(self, asset_ref: str) -> None:
        path = self._path_for(asset_ref)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as exc:
            logger.warning("Could not delete asset %s: %s", asset_ref, exc)
