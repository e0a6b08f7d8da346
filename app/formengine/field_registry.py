from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .schemas import FieldDefinition, FieldType, UploadedAsset

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequiredContext:
    """What a required-check may know besides the raw value."""

    assets: List[UploadedAsset]
    uploading: bool = False


Validator = Callable[[FieldDefinition, Any, RequiredContext], Optional[str]]


@dataclass(frozen=True)
class FieldBehavior:
    field_type: FieldType
    control: str
    value_shape: str
    display_only: bool = False
    file_backed: bool = False
    validator: Optional[Validator] = None


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _require_text(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    if is_empty(value):
        return f"{spec.label or spec.field_name} is required."
    return None


def _require_number(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    if isinstance(value, bool) or is_empty(value):
        return f"{spec.label or spec.field_name} is required."
    try:
        number = float(value)
    except (TypeError, ValueError):
        return f"{spec.label or spec.field_name} must be a number."
    if math.isnan(number):
        return f"{spec.label or spec.field_name} must be a number."
    return None


def _require_choice(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    if is_empty(value):
        return f"{spec.label or spec.field_name} is required."
    choices = spec.choices
    if choices and value not in choices:
        return f"{spec.label or spec.field_name} must be one of: {', '.join(choices)}."
    return None


def _require_rating(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    try:
        rating = int(value)
    except (TypeError, ValueError):
        rating = 0
    if rating <= 0:
        return f"{spec.label or spec.field_name} needs a rating."
    return None


def _require_asset(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    if ctx.uploading:
        return f"{spec.label or spec.field_name} is still uploading."
    if is_empty(value) or not ctx.assets:
        return f"{spec.label or spec.field_name} needs a file."
    keys = {asset.storage_key for asset in ctx.assets}
    stored = value if isinstance(value, list) else [value]
    if not all(key in keys for key in stored):
        return f"{spec.label or spec.field_name} needs a file."
    return None


def issue_record_problems(record: Any) -> List[str]:
    """Missing mandatory attributes of one issue record (category, description)."""
    if not isinstance(record, dict):
        return ["category", "description"]
    missing = []
    for key in ("category", "description"):
        if is_empty(record.get(key)):
            missing.append(key)
    return missing


def _require_issues(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    records = value if isinstance(value, list) else []
    if not records:
        return f"{spec.label or spec.field_name} needs at least one issue."
    for idx, record in enumerate(records, start=1):
        missing = issue_record_problems(record)
        if missing:
            return f"Issue #{idx} is missing {' and '.join(missing)}."
    return None


FIELD_BEHAVIORS: Dict[FieldType, FieldBehavior] = {
    FieldType.TEXT: FieldBehavior(FieldType.TEXT, "text_input", "scalar", validator=_require_text),
    FieldType.TEXTAREA: FieldBehavior(FieldType.TEXTAREA, "textarea", "scalar", validator=_require_text),
    FieldType.NUMBER: FieldBehavior(FieldType.NUMBER, "number_input", "scalar", validator=_require_number),
    FieldType.DATE: FieldBehavior(FieldType.DATE, "date_input", "iso_string", validator=_require_text),
    FieldType.DATETIME: FieldBehavior(FieldType.DATETIME, "datetime_input", "iso_string", validator=_require_text),
    FieldType.TIME: FieldBehavior(FieldType.TIME, "time_input", "iso_string", validator=_require_text),
    FieldType.DROPDOWN: FieldBehavior(FieldType.DROPDOWN, "select", "choice", validator=_require_choice),
    FieldType.RADIO: FieldBehavior(FieldType.RADIO, "radio_group", "choice", validator=_require_choice),
    # Absence reads as False, so a boolean never blocks submission.
    FieldType.BOOLEAN: FieldBehavior(FieldType.BOOLEAN, "checkbox", "bool"),
    FieldType.RATING: FieldBehavior(FieldType.RATING, "star_rating", "int_1_5", validator=_require_rating),
    FieldType.FILE: FieldBehavior(FieldType.FILE, "file_upload", "storage_key", file_backed=True, validator=_require_asset),
    FieldType.SIGNATURE: FieldBehavior(FieldType.SIGNATURE, "signature_pad", "signature_blob", validator=_require_text),
    FieldType.SECTION_HEADER: FieldBehavior(FieldType.SECTION_HEADER, "section_header", "none", display_only=True),
    FieldType.PARAGRAPH: FieldBehavior(FieldType.PARAGRAPH, "paragraph", "none", display_only=True),
    FieldType.LICENCE_SCAN: FieldBehavior(
        FieldType.LICENCE_SCAN, "licence_capture", "storage_key", file_backed=True, validator=_require_asset
    ),
    FieldType.PDI_ISSUES: FieldBehavior(FieldType.PDI_ISSUES, "issue_list", "issue_records", validator=_require_issues),
}


def resolve_field_type(tag: Optional[str]) -> FieldType:
    try:
        return FieldType(str(tag or "").upper())
    except ValueError:
        LOGGER.debug("Unknown field type %r; rendering as TEXT", tag)
        return FieldType.TEXT


def behavior_for(spec: FieldDefinition) -> FieldBehavior:
    return FIELD_BEHAVIORS[resolve_field_type(spec.type)]


def is_display_only(spec: FieldDefinition) -> bool:
    return behavior_for(spec).display_only


def check_required(spec: FieldDefinition, value: Any, ctx: RequiredContext) -> Optional[str]:
    """Return a message when a required field is unsatisfied; non-required fields always pass."""
    if not spec.required:
        return None
    behavior = behavior_for(spec)
    if behavior.display_only or behavior.validator is None:
        return None
    return behavior.validator(spec, value, ctx)


def render_control(
    spec: FieldDefinition,
    value: Any,
    *,
    assets: Optional[List[UploadedAsset]] = None,
    hidden: bool = False,
    uploading: bool = False,
    label: Optional[str] = None,
) -> Dict[str, Any]:
    behavior = behavior_for(spec)
    control: Dict[str, Any] = {
        "fieldName": spec.field_name,
        "label": label if label is not None else spec.label,
        "type": behavior.field_type.value,
        "control": behavior.control,
        "required": bool(spec.required) and not hidden and not behavior.display_only,
        "hidden": hidden,
    }
    if behavior.display_only:
        return control
    if behavior.field_type == FieldType.BOOLEAN:
        control["value"] = bool(value)
    elif behavior.field_type == FieldType.PDI_ISSUES:
        control["value"] = list(value) if isinstance(value, list) else []
    else:
        control["value"] = value
    if behavior.field_type in {FieldType.DROPDOWN, FieldType.RADIO}:
        control["choices"] = spec.choices
    if behavior.field_type == FieldType.RATING:
        control["max"] = 5
    if behavior.file_backed:
        # Previews come from the asset ledger; the stored value is a storage key.
        control["previews"] = [asset.preview_url for asset in assets or [] if asset.preview_url]
        control["uploading"] = uploading
    if spec.extraction_source_key:
        control["extractionSourceKey"] = spec.extraction_source_key
    return control


def field_types_payload() -> Dict[str, object]:
    return {
        "types": [
            {
                "type": behavior.field_type.value,
                "control": behavior.control,
                "value_shape": behavior.value_shape,
                "display_only": behavior.display_only,
                "file_backed": behavior.file_backed,
                "can_block": behavior.validator is not None,
            }
            for behavior in FIELD_BEHAVIORS.values()
        ],
        "fallback": FieldType.TEXT.value,
    }
