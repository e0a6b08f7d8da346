from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional, Tuple

import anyio
from PIL import Image, ImageOps, UnidentifiedImageError

from ..config import CONFIG, UploadConfig
from ..field_registry import behavior_for
from ..schemas import UploadedAsset, UploadOutcome, UploadStatus
from ..services import RawFile

if TYPE_CHECKING:
    from ..services import Services
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)

PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


def compress_image(raw: RawFile, max_edge: int) -> RawFile:
    """Downscale photos whose longest edge exceeds ``max_edge``; other files pass through."""
    fmt = PIL_FORMATS.get(raw.mime_type.lower())
    if not fmt:
        return raw
    try:
        image = Image.open(BytesIO(raw.content))
        # Phone photos carry their rotation in EXIF; bake it in before resizing.
        image = ImageOps.exif_transpose(image)
        if max(image.size) <= max_edge:
            return raw
        image.thumbnail((max_edge, max_edge))
        if fmt == "JPEG" and image.mode not in {"RGB", "L"}:
            image = image.convert("RGB")
        buffer = BytesIO()
        save_kwargs = {"quality": 85, "optimize": True} if fmt == "JPEG" else {}
        image.save(buffer, format=fmt, **save_kwargs)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        LOGGER.warning("Image compression failed for %s: %s", raw.filename, exc)
        return raw
    LOGGER.debug("Compressed %s from %d to %d bytes", raw.filename, raw.size, buffer.tell())
    return RawFile(filename=raw.filename, content=buffer.getvalue(), mime_type=raw.mime_type)


def prepare_upload(raw: RawFile, config: Optional[UploadConfig] = None) -> Tuple[Optional[RawFile], Optional[str]]:
    config = config or CONFIG.upload
    if not raw.content:
        return None, "File is empty."
    if raw.mime_type.lower() not in config.allowed_types:
        return None, f"Unsupported file type: {raw.mime_type}"
    prepared = compress_image(raw, config.image_max_edge)
    if prepared.size > config.max_bytes:
        limit_mb = config.max_bytes / (1024 * 1024)
        return None, f"File too large (max {limit_mb:g}MB)."
    return prepared, None


def parse_upload_response(data: Any, field_name: str, raw: RawFile) -> Optional[UploadedAsset]:
    """Build the asset record; the permanent key is preferred over the signed URL."""
    if not isinstance(data, dict):
        return None
    storage_key = data.get("storageKey") or data.get("key") or data.get("url")
    if not storage_key:
        return None
    return UploadedAsset(
        field_name=field_name,
        storage_key=str(storage_key),
        preview_url=data.get("previewUrl") or data.get("url"),
        filename=data.get("filename") or Path(raw.filename).name,
        mime_type=data.get("mimeType") or data.get("type") or raw.mime_type,
        size=int(data.get("size") or raw.size),
    )


async def send_file(
    field_name: str,
    raw: RawFile,
    services: "Services",
) -> Tuple[Optional[UploadedAsset], Optional[str], bool]:
    """Check, compress and upload one file. Returns ``(asset, error, rejected_locally)``."""
    prepared, error = prepare_upload(raw)
    if error:
        return None, error, True
    try:
        data, error = await anyio.to_thread.run_sync(services.upload_file, prepared)
    except Exception as exc:  # noqa: BLE001
        data, error = None, f"Upload failed: {exc}"
    if error:
        return None, error, False
    asset = parse_upload_response(data, field_name, prepared)
    if asset is None:
        return None, "Upload returned no storage key.", False
    return asset, None, False


async def upload_field_file(session: "FormSession", field_name: str, raw: RawFile, services: "Services") -> UploadOutcome:
    """Upload a file for a FILE / LICENCE_SCAN field and store its storage key as the value."""
    spec = session.field(field_name)
    if spec is None or not behavior_for(spec).file_backed:
        return UploadOutcome(status=UploadStatus.REJECTED, field_name=field_name, message="Not a file field.")

    session.begin_upload(field_name)
    try:
        asset, error, rejected = await send_file(field_name, raw, services)
    finally:
        session.end_upload(field_name)

    if not session.is_active:
        LOGGER.info("Upload for %s finished after session closed; discarded", field_name)
        return UploadOutcome(status=UploadStatus.DISCARDED, field_name=field_name)
    if error:
        LOGGER.warning("Upload for %s failed: %s", field_name, error)
        status = UploadStatus.REJECTED if rejected else UploadStatus.FAILED
        return UploadOutcome(status=status, field_name=field_name, message=error)

    session.assets.record(asset, multiple=spec.multiple)
    if spec.multiple:
        keys = [item.storage_key for item in session.assets.for_field(field_name)]
        session.values.set(field_name, keys, source="upload")
    else:
        session.values.set(field_name, asset.storage_key, source="upload")
    LOGGER.info("Uploaded %s for %s", asset.filename, field_name)
    return UploadOutcome(status=UploadStatus.UPLOADED, field_name=field_name, message="File uploaded", asset=asset)


async def send_files_in_order(
    ledger_key: str,
    raws: List[RawFile],
    services: "Services",
) -> Tuple[List[UploadedAsset], List[str]]:
    """Upload a batch one at a time so the asset order matches the input order."""
    assets: List[UploadedAsset] = []
    errors: List[str] = []
    for raw in raws:
        asset, error, _ = await send_file(ledger_key, raw, services)
        if error:
            errors.append(f"{raw.filename}: {error}")
            continue
        assets.append(asset)
    return assets, errors
