from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from pod_pipeline.config import settings
from pod_pipeline.db.enums import AssetKindEnum, AssetRoleEnum
from pod_pipeline.db.models import DesignAsset
from pod_pipeline.db.repositories import AssetsRepository

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(r"^data:(?P<mime>image/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)
_MAX_DOWNLOAD_BYTES = 25 * 1024 * 1024


class ImageLoadError(RuntimeError):
    pass


@dataclass
class LoadedImage:
    content: bytes
    content_type: str
    filename: str

    def as_data_uri(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


def _extension_for(content_type: str) -> str:
    if "webp" in content_type:
        return "webp"
    if "jpeg" in content_type or "jpg" in content_type:
        return "jpg"
    return "png"


def is_data_uri(ref: str | None) -> bool:
    return bool(ref) and str(ref).startswith("data:")


def is_remote_url(ref: str | None) -> bool:
    return bool(ref) and urlparse(str(ref)).scheme in ("http", "https")


class ImageStore:
    """
    Local uploads directory for generated images.

    Files are content-addressed (`<sha256>.<ext>`) and referenced as
    `<POD_UPLOADS_URL_PREFIX>/<filename>`, which is what ends up in asset rows.
    """

    def __init__(self, root: str | Path | None = None, url_prefix: str | None = None, timeout: float = 30.0) -> None:
        self.root = Path(root or settings.POD_UPLOADS_DIR)
        self.url_prefix = (url_prefix or settings.POD_UPLOADS_URL_PREFIX).rstrip("/")
        self.timeout = timeout

    def is_local_ref(self, ref: str | None) -> bool:
        return bool(ref) and str(ref).startswith(f"{self.url_prefix}/")

    def path_for(self, ref: str) -> Path:
        return self.root / Path(ref).name

    def save_bytes(self, content: bytes, content_type: str = "image/png") -> str:
        sha = hashlib.sha256(content).hexdigest()
        filename = f"{sha}.{_extension_for(content_type)}"
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / filename
        if not target.exists():
            target.write_bytes(content)
        logger.info("image_store.saved", extra={"filename": filename, "size_bytes": len(content)})
        return f"{self.url_prefix}/{filename}"

    def save_base64(self, data: str, content_type: str = "image/png") -> str:
        """Persist inline base64 output; degrade to a data URI when the disk write fails."""
        try:
            content = base64.b64decode(data, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise ImageLoadError(f"Invalid base64 image payload: {exc}") from exc
        try:
            return self.save_bytes(content, content_type)
        except OSError:
            logger.exception("image_store.save_failed")
            return f"data:{content_type};base64,{data}"

    async def load(self, ref: str) -> LoadedImage:
        """Resolve a data URI, local upload reference, or http(s) URL to bytes."""
        if is_data_uri(ref):
            match = _DATA_URI_RE.match(ref)
            if not match:
                raise ImageLoadError("Invalid data URI image reference")
            mime = match.group("mime")
            try:
                content = base64.b64decode(match.group("data"))
            except (binascii.Error, ValueError) as exc:
                raise ImageLoadError(f"Invalid data URI payload: {exc}") from exc
            return LoadedImage(content=content, content_type=mime, filename=f"reference.{_extension_for(mime)}")

        if self.is_local_ref(ref):
            path = self.path_for(ref)
            if not path.exists():
                raise ImageLoadError(f"Local image not found: {path.name}")
            mime = mimetypes.guess_type(path.name)[0] or "image/png"
            return LoadedImage(content=path.read_bytes(), content_type=mime, filename=f"reference{path.suffix}")

        if is_remote_url(ref):
            return await self._download(ref)

        raise ImageLoadError(f"Unsupported image reference: {ref[:80]}")

    async def persist_remote(self, ref: str) -> str:
        """Copy a remotely hosted image into the store; returns the original reference on failure."""
        if not is_remote_url(ref):
            return ref
        try:
            image = await self._download(ref)
        except (ImageLoadError, httpx.HTTPError):
            logger.warning("image_store.persist_failed", extra={"url": ref})
            return ref
        try:
            return self.save_bytes(image.content, image.content_type)
        except OSError:
            logger.exception("image_store.persist_write_failed", extra={"url": ref})
            return ref

    def delete(self, ref: str) -> None:
        if not self.is_local_ref(ref):
            return
        path = self.path_for(ref)
        if path.exists():
            path.unlink()

    async def _download(self, url: str) -> LoadedImage:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.RequestError as exc:
            raise ImageLoadError(f"Network error while downloading image: {exc}") from exc
        if response.status_code >= 400:
            raise ImageLoadError(f"Image download failed ({response.status_code})")
        content = response.content
        if len(content) > _MAX_DOWNLOAD_BYTES:
            raise ImageLoadError("Image too large")
        content_type = (response.headers.get("content-type") or "image/png").split(";")[0].strip()
        return LoadedImage(content=content, content_type=content_type, filename=f"reference.{_extension_for(content_type)}")


class AssetStorageService:
    def __init__(self, session: Session) -> None:
        self.assets = AssetsRepository(session)

    def save_asset(
        self,
        *,
        design_id: str,
        shop_domain: str,
        kind: AssetKindEnum,
        role: AssetRoleEnum,
        url: str,
        prompt: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> DesignAsset:
        return self.assets.create(
            design_id=design_id,
            shop_domain=shop_domain,
            kind=kind,
            role=role,
            url=url,
            prompt=prompt,
            provider=provider,
        )

    def list_design_assets(
        self, shop_domain: str, design_id: str, kind: Optional[AssetKindEnum] = None
    ) -> List[DesignAsset]:
        return self.assets.list_for_design(shop_domain, design_id, kind=kind)
