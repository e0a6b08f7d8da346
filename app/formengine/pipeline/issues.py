from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import ValidationError

from ..field_registry import behavior_for, issue_record_problems
from ..schemas import FieldType, IssueRecord, UploadedAsset
from ..services import RawFile
from .uploads import send_files_in_order

if TYPE_CHECKING:
    from ..services import Services
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)

ISSUE_SUBCATEGORIES: Dict[str, List[str]] = {
    "mechanical": ["Engine", "Transmission", "Suspension", "Brakes", "Exhaust", "Other"],
    "electrical": ["Battery", "Lights", "Starter Motor", "Alternator", "Sensors", "Other"],
    "bodywork": ["Panel Damage", "Scratches", "Dents", "Bumper", "Windscreen", "Other"],
    "interior": ["Seats", "Dashboard", "Trim", "Carpet", "Controls", "Other"],
    "tyres": ["Tread Depth", "Puncture", "Alloys", "Alignment", "Other"],
    "mot": ["Advisory", "Failed Item", "Due Soon", "Other"],
    "service": ["Oil Change", "Filters", "Fluids", "Timing Belt", "Other"],
    "fault_codes": ["Engine", "Transmission", "ABS", "Airbag", "Emissions", "Other"],
    "other": ["General", "Misc"],
}
ISSUE_STATUSES = ("outstanding", "ordered", "in_progress", "resolved")

EDITABLE_KEYS = {
    "category": "category",
    "subcategory": "subcategory",
    "description": "description",
    "actionNeeded": "action_needed",
    "action_needed": "action_needed",
    "estimatedCost": "estimated_cost",
    "estimated_cost": "estimated_cost",
    "status": "status",
    "notes": "notes",
}
# Changing the left-hand attribute empties the right-hand one.
DEPENDENT_RESETS = {"category": "subcategory"}


class IssueEditError(ValueError):
    pass


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def normalize_issue_value(value: Any) -> List[Dict[str, Any]]:
    """Shape a client-written issue list: a list of dicts, each with a string id."""
    if not isinstance(value, list):
        raise IssueEditError("Issue list must be a list of records")
    out = []
    for idx, item in enumerate(value):
        if not isinstance(item, dict):
            raise IssueEditError(f"Issue at position {idx} must be an object")
        record = dict(item)
        record["id"] = str(record.get("id") or _new_id())
        out.append(record)
    return out


def _coerce_record(item: Any) -> Optional[IssueRecord]:
    if not isinstance(item, dict):
        LOGGER.warning("Skipping malformed issue entry: %r", item)
        return None
    data = dict(item)
    data["id"] = str(data.get("id") or _new_id())
    try:
        return IssueRecord.model_validate(data)
    except ValidationError as exc:
        LOGGER.warning("Issue %s has invalid attributes, keeping text only: %s", data["id"], exc)
        return IssueRecord(
            id=data["id"],
            category=str(data.get("category") or ""),
            description=str(data.get("description") or ""),
        )


class IssueListEditor:
    """Add / update / remove structured issue records stored under one field.

    Records live in the value store as plain dicts; their photos are stored as
    storage keys, with the upload metadata kept in the asset ledger under
    ``<field>:<record id>``.
    """

    def __init__(self, session: "FormSession", field_name: str) -> None:
        spec = session.field(field_name)
        if spec is None or behavior_for(spec).field_type != FieldType.PDI_ISSUES:
            raise IssueEditError(f"{field_name} is not an issue list field")
        self.session = session
        self.field_name = field_name

    def records(self) -> List[IssueRecord]:
        raw = self.session.values.get(self.field_name) or []
        if not isinstance(raw, list):
            LOGGER.warning("Issue list %s is not a list; treating as empty", self.field_name)
            return []
        records = (_coerce_record(item) for item in raw)
        return [record for record in records if record is not None]

    def _store(self, records: List[IssueRecord]) -> None:
        self.session.values.set(self.field_name, [record.model_dump(by_alias=True) for record in records])

    def _check_index(self, records: List[IssueRecord], index: int) -> None:
        if index < 0 or index >= len(records):
            raise IndexError(f"No issue at position {index}")

    def asset_key(self, record_id: str) -> str:
        return f"{self.field_name}:{record_id}"

    def add(self) -> int:
        records = self.records()
        records.append(IssueRecord(id=_new_id()))
        self._store(records)
        return len(records) - 1

    def update(self, index: int, key: str, value: Any) -> IssueRecord:
        attr = EDITABLE_KEYS.get(key)
        if attr is None:
            raise IssueEditError(f"Unknown issue attribute: {key}")
        records = self.records()
        self._check_index(records, index)
        if attr == "status" and value not in ISSUE_STATUSES:
            raise IssueEditError(f"Unknown issue status: {value}")
        if attr == "subcategory" and value:
            allowed = ISSUE_SUBCATEGORIES.get(records[index].category)
            if allowed and value not in allowed:
                raise IssueEditError(f"{value} is not a {records[index].category} subcategory")
        if attr == "estimated_cost" and value not in (None, ""):
            try:
                value = float(value)
            except (TypeError, ValueError) as exc:
                raise IssueEditError(f"Estimated cost must be a number: {value}") from exc
        elif attr == "estimated_cost":
            value = None
        else:
            value = "" if value is None else str(value)
        changes = {attr: value}
        dependent = DEPENDENT_RESETS.get(attr)
        if dependent:
            changes[dependent] = ""
        records[index] = records[index].model_copy(update=changes)
        self._store(records)
        return records[index]

    def remove(self, index: int) -> IssueRecord:
        records = self.records()
        self._check_index(records, index)
        removed = records.pop(index)
        self._store(records)
        self.session.assets.remove_field(self.asset_key(removed.id))
        return removed

    def photos(self, index: int) -> List[UploadedAsset]:
        records = self.records()
        self._check_index(records, index)
        return self.session.assets.for_field(self.asset_key(records[index].id))

    async def add_photos(self, index: int, raws: List[RawFile], services: "Services") -> Dict[str, Any]:
        """Upload photos for one record, in order, and append their storage keys to it."""
        records = self.records()
        self._check_index(records, index)
        record_id = records[index].id
        ledger_key = self.asset_key(record_id)
        assets, errors = await send_files_in_order(ledger_key, raws, services)

        if not self.session.is_active:
            LOGGER.info("Issue photos for %s arrived after session closed; discarded", ledger_key)
            return {"status": "discarded", "assets": [], "errors": errors}
        # The record may have moved or been removed while uploads were running.
        records = self.records()
        position: Optional[int] = next((i for i, item in enumerate(records) if item.id == record_id), None)
        if position is None:
            LOGGER.info("Issue %s removed during photo upload; discarded", record_id)
            return {"status": "discarded", "assets": [], "errors": errors}

        for asset in assets:
            self.session.assets.record(asset, multiple=True)
        keys = records[position].photos + [asset.storage_key for asset in assets]
        records[position] = records[position].model_copy(update={"photos": keys})
        self._store(records)
        status = "uploaded" if assets and not errors else ("partial" if assets else "failed")
        return {"status": status, "assets": assets, "errors": errors}

    def problems(self) -> Dict[int, List[str]]:
        out = {}
        for idx, record in enumerate(self.records()):
            missing = issue_record_problems(record.model_dump(by_alias=True))
            if missing:
                out[idx] = missing
        return out
