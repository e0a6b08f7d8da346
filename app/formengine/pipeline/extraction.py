from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import anyio

from ..config import CONFIG
from ..field_registry import behavior_for
from ..schemas import ExtractionOutcome, ExtractionStatus, FieldType, UploadStatus
from ..services import RawFile
from .lookup import WritePolicy
from .normalize import normalize_date
from .uploads import compress_image, upload_field_file

if TYPE_CHECKING:
    from ..services import Services
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)

# Extracted values replace whatever the field held.
EXTRACTION_WRITE_POLICY = WritePolicy.OVERWRITE

# Bookkeeping keys in the extraction record that never map to a field.
NON_FIELD_KEYS = {"confidence", "missingFields"}
DATE_TYPES = {FieldType.DATE}
_ABSENT = object()

EXTRACTED_MESSAGE = "Details captured from licence - please verify"
NO_MAPPING_MESSAGE = "Could not extract details. Please enter manually."
EXTRACTION_FAILED_MESSAGE = "Failed to process licence. Please enter details manually."
UPLOAD_FAILED_MESSAGE = "Licence photo could not be uploaded. Please try again."


def encode_image(raw: RawFile, max_edge: Optional[int] = None) -> str:
    prepared = compress_image(raw, max_edge or CONFIG.upload.image_max_edge)
    return base64.b64encode(prepared.content).decode("ascii")


def _coerce(spec_type: FieldType, value: Any) -> Any:
    if spec_type in DATE_TYPES:
        return normalize_date(value) or value
    return value


def apply_extraction(session: "FormSession", licence_field: str, extracted: Dict[str, Any]) -> List[str]:
    """Write extracted values into every field whose extraction key is present.

    The value each field held before its first extraction write is remembered so
    ``clear_extraction`` can put it back.
    """
    snapshot = session.extraction_snapshots.setdefault(licence_field, {})
    mapped = []
    for spec in session.form.fields:
        key = spec.extraction_source_key
        if not key or key in NON_FIELD_KEYS:
            continue
        value = extracted.get(key)
        if value in (None, ""):
            continue
        current = session.values.get(spec.field_name, _ABSENT)
        if EXTRACTION_WRITE_POLICY == WritePolicy.PRESERVE_USER_EDITS and session.values.was_user_edited(
            spec.field_name
        ):
            continue
        if spec.field_name not in snapshot:
            snapshot[spec.field_name] = current
        session.values.set(spec.field_name, _coerce(behavior_for(spec).field_type, value), source="extraction")
        mapped.append(spec.field_name)
    if not snapshot:
        session.extraction_snapshots.pop(licence_field, None)
    return mapped


def clear_extraction(session: "FormSession", licence_field: str) -> List[str]:
    """Drop the licence asset and restore every field the extraction wrote."""
    session.values.clear(licence_field)
    session.assets.remove_field(licence_field)
    restored = []
    snapshot = session.extraction_snapshots.pop(licence_field, {})
    for field_name, prior in snapshot.items():
        if prior is _ABSENT:
            session.values.clear(field_name)
        else:
            session.values.set(field_name, prior)
        restored.append(field_name)
    return restored


async def capture_licence(
    session: "FormSession",
    licence_field: str,
    raw: RawFile,
    services: "Services",
) -> ExtractionOutcome:
    """Upload the photo, then try to auto-fill fields from it.

    Extraction only runs once the upload succeeded; its failure keeps the asset.
    """
    upload = await upload_field_file(session, licence_field, raw, services)
    if upload.status == UploadStatus.DISCARDED:
        return ExtractionOutcome(status=ExtractionStatus.DISCARDED, field_name=licence_field)
    if upload.status != UploadStatus.UPLOADED:
        return ExtractionOutcome(
            status=ExtractionStatus.FAILED,
            field_name=licence_field,
            stage="upload",
            message=upload.message or UPLOAD_FAILED_MESSAGE,
        )

    try:
        encoded = encode_image(raw)
        data, error = await anyio.to_thread.run_sync(services.extract_document, encoded, raw.mime_type or "image/jpeg")
    except Exception as exc:  # noqa: BLE001
        data, error = None, str(exc)

    if not session.is_active:
        LOGGER.info("Extraction for %s finished after session closed; discarded", licence_field)
        return ExtractionOutcome(status=ExtractionStatus.DISCARDED, field_name=licence_field, asset=upload.asset)
    if error or not isinstance(data, dict):
        LOGGER.warning("Licence extraction failed for %s: %s", licence_field, error)
        return ExtractionOutcome(
            status=ExtractionStatus.FAILED,
            field_name=licence_field,
            stage="extraction",
            message=EXTRACTION_FAILED_MESSAGE,
            asset=upload.asset,
        )

    mapped = apply_extraction(session, licence_field, data)
    if not mapped:
        LOGGER.info("Extraction for %s produced no mappable fields (keys: %s)", licence_field, sorted(data))
        return ExtractionOutcome(
            status=ExtractionStatus.NO_MAPPABLE_FIELDS,
            field_name=licence_field,
            stage="mapping",
            message=NO_MAPPING_MESSAGE,
            asset=upload.asset,
        )
    LOGGER.info("Extraction for %s mapped %d fields", licence_field, len(mapped))
    return ExtractionOutcome(
        status=ExtractionStatus.EXTRACTED,
        field_name=licence_field,
        message=EXTRACTED_MESSAGE,
        asset=upload.asset,
        mapped_fields=mapped,
    )


def licence_fields(session: "FormSession") -> List[str]:
    return [
        spec.field_name
        for spec in session.form.fields
        if behavior_for(spec).field_type == FieldType.LICENCE_SCAN
    ]

