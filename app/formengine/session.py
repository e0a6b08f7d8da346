from __future__ import annotations

import copy
import datetime as dt
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

from .field_registry import RequiredContext, behavior_for, render_control
from .pipeline.selection import SelectionMachine, selection_groups_for
from .pipeline.tokens import format_terms_as_list, substitute_tokens
from .schemas import FieldDefinition, FieldType, FormDefinition, UploadedAsset

LOGGER = logging.getLogger(__name__)

DEFAULT_VALUE_FORM_TYPES = {"TEST_DRIVE", "DELIVERY"}


class UnknownFieldError(KeyError):
    """Raised when writing a key that neither the form nor a reserved group declares."""


class FieldValueStore:
    """Single authoritative field-value map for one session.

    Only declared keys may be written: the form's own fields plus keys reserved by
    selection groups. Clearing removes the key so no stale value survives a mode change.
    """

    def __init__(self, field_names: Iterable[str], reserved_keys: Iterable[str] = ()) -> None:
        self._fields: List[str] = list(field_names)
        self._known: Set[str] = set(self._fields) | set(reserved_keys)
        self._values: Dict[str, Any] = {}
        self._user_edited: Set[str] = set()

    def is_known(self, name: str) -> bool:
        return name in self._known

    def has_form_field(self, name: str) -> bool:
        return name in self._fields

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def set(self, name: str, value: Any, *, source: str = "user") -> None:
        if name not in self._known:
            raise UnknownFieldError(name)
        self._values[name] = value
        if source == "user":
            self._user_edited.add(name)
        else:
            self._user_edited.discard(name)

    def clear(self, name: str) -> None:
        if name not in self._known:
            raise UnknownFieldError(name)
        self._values.pop(name, None)
        self._user_edited.discard(name)

    def was_user_edited(self, name: str) -> bool:
        return name in self._user_edited

    def reset(self) -> None:
        self._values.clear()
        self._user_edited.clear()

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)


class AssetLedger:
    """Uploaded assets for display and submission, keyed by owning field."""

    def __init__(self) -> None:
        self._assets: Dict[str, List[UploadedAsset]] = {}

    def record(self, asset: UploadedAsset, *, multiple: bool = False) -> None:
        if multiple:
            self._assets.setdefault(asset.field_name, []).append(asset)
        else:
            self._assets[asset.field_name] = [asset]

    def for_field(self, field_name: str) -> List[UploadedAsset]:
        return list(self._assets.get(field_name, []))

    def remove_field(self, field_name: str) -> List[UploadedAsset]:
        return self._assets.pop(field_name, [])

    def all(self) -> List[UploadedAsset]:
        out: List[UploadedAsset] = []
        for assets in self._assets.values():
            out.extend(assets)
        return out

    def reset(self) -> None:
        self._assets.clear()


class FormSession:
    """In-memory state of one form-fill session.

    Owns the value store, the asset ledger and one selection machine per governed
    group. Async operations check ``is_active`` before writing so results that
    arrive after the session closed are dropped.
    """

    def __init__(
        self,
        form: FormDefinition,
        dealer: Optional[Dict[str, Any]] = None,
        *,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.form = form
        self.dealer = dealer or {}
        self.selections: Dict[str, SelectionMachine] = {
            group.name: SelectionMachine(group) for group in selection_groups_for(form)
        }
        reserved: Set[str] = set()
        for machine in self.selections.values():
            reserved.update(machine.group.reserved_keys)
        self.values = FieldValueStore([spec.field_name for spec in form.fields], reserved)
        self.assets = AssetLedger()
        # field -> number of uploads still in flight
        self.uploading: Dict[str, int] = {}
        # licence field -> {mapped field -> value before extraction wrote it}
        self.extraction_snapshots: Dict[str, Dict[str, Any]] = {}
        self.hints: List[str] = []
        self.submitting = False
        self.submitted = False
        self.closed = False

    @property
    def is_active(self) -> bool:
        return not self.closed and not self.submitted

    def close(self) -> None:
        self.closed = True
        LOGGER.info("Session %s closed", self.id)

    def begin_upload(self, field_name: str) -> None:
        self.uploading[field_name] = self.uploading.get(field_name, 0) + 1

    def end_upload(self, field_name: str) -> None:
        remaining = self.uploading.get(field_name, 0) - 1
        if remaining > 0:
            self.uploading[field_name] = remaining
        else:
            self.uploading.pop(field_name, None)

    def is_uploading(self, field_name: str) -> bool:
        return field_name in self.uploading

    def field(self, field_name: str) -> Optional[FieldDefinition]:
        return self.form.get_field(field_name)

    def is_hidden(self, field_name: str) -> bool:
        return any(machine.hides(field_name) for machine in self.selections.values())

    def required_context(self, field_name: str) -> RequiredContext:
        return RequiredContext(
            assets=self.assets.for_field(field_name),
            uploading=self.is_uploading(field_name),
        )

    def mark_submitted(self) -> None:
        self.submitted = True
        self.values.reset()
        self.assets.reset()
        self.extraction_snapshots.clear()

    def apply_default_values(self, now: Optional[dt.datetime] = None) -> None:
        """Prefill the first TIME and DATE fields for test-drive and delivery forms."""
        if str(self.form.type or "").upper() not in DEFAULT_VALUE_FORM_TYPES:
            return
        now = now or dt.datetime.now()
        time_field = next((f for f in self.form.fields if behavior_for(f).field_type == FieldType.TIME), None)
        date_field = next((f for f in self.form.fields if behavior_for(f).field_type == FieldType.DATE), None)
        if time_field and not self.values.get(time_field.field_name):
            rounded = dt.datetime(now.year, now.month, now.day, now.hour) + dt.timedelta(
                minutes=int(now.minute / 15 + 0.5) * 15
            )
            self.values.set(time_field.field_name, rounded.strftime("%H:%M"), source="default")
        if date_field and not self.values.get(date_field.field_name):
            self.values.set(date_field.field_name, now.date().isoformat(), source="default")

    def render(self) -> Dict[str, Any]:
        controls = []
        for spec in self.form.fields:
            hidden = self.is_hidden(spec.field_name)
            behavior = behavior_for(spec)
            label = substitute_tokens(spec.label, self.dealer) if behavior.display_only else spec.label
            controls.append(
                render_control(
                    spec,
                    self.values.get(spec.field_name),
                    assets=self.assets.for_field(spec.field_name),
                    hidden=hidden,
                    uploading=self.is_uploading(spec.field_name),
                    label=label,
                )
            )
        return {
            "sessionId": self.id,
            "formId": self.form.id,
            "name": self.form.name,
            "type": self.form.type,
            "staticText": [substitute_tokens(text, self.dealer) for text in self.form.static_text],
            "terms": [format_terms_as_list(text, self.dealer) for text in self.form.static_text],
            "fields": controls,
            "selections": {name: machine.describe() for name, machine in self.selections.items()},
            "hints": list(self.hints),
            "submitting": self.submitting,
            "submitted": self.submitted,
        }
