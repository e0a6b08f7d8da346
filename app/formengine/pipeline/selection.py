from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import anyio

from ..config import CONFIG
from ..schemas import (
    FormDefinition,
    SearchOutcome,
    SearchStatus,
    SelectionGroupDefinition,
    VehicleCandidate,
)

if TYPE_CHECKING:
    from ..services import Services
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)


class SelectionState(str, Enum):
    SEARCHING = "SEARCHING"
    MANUAL = "MANUAL"
    SELECTED = "SELECTED"


class SelectionEvent(str, Enum):
    PICK = "pick"
    CHOOSE_MANUAL = "choose_manual"
    CHANGE_SELECTION = "change_selection"
    SEARCH_INSTEAD = "search_instead"


TRANSITIONS: Dict[tuple, SelectionState] = {
    (SelectionState.SEARCHING, SelectionEvent.PICK): SelectionState.SELECTED,
    (SelectionState.SEARCHING, SelectionEvent.CHOOSE_MANUAL): SelectionState.MANUAL,
    (SelectionState.SELECTED, SelectionEvent.CHANGE_SELECTION): SelectionState.SEARCHING,
    (SelectionState.MANUAL, SelectionEvent.SEARCH_INSTEAD): SelectionState.SEARCHING,
}

VRM_FIELD_NAMES = ("vrm", "reg", "registration", "vehicle_reg", "regcurrent")
SELECTION_FORM_TYPES = {"PDI", "DELIVERY", "TEST_DRIVE"}
FORM_TYPE_SEARCH_PARAMS = {
    "PDI": {"statuses": "IN_PREP,ADVERTISED"},
    "DELIVERY": {"hasDelivery": "true", "includeDealInfo": "true"},
}
DEFAULT_HIDDEN_FIELDS = ["make", "model", "vehicle_make", "vehicle_model"]
DEFAULT_RESERVED_KEYS = ["vehicleId", "dealId"]


class InvalidTransitionError(ValueError):
    pass


def default_vehicle_group(form: FormDefinition) -> Optional[SelectionGroupDefinition]:
    if str(form.type or "").upper() not in SELECTION_FORM_TYPES:
        return None
    search_field = next(
        (spec.field_name for spec in form.fields if spec.field_name.lower() in VRM_FIELD_NAMES),
        None,
    )
    if not search_field:
        return None
    populate = {
        search_field: "vrm|regCurrent",
        "make": "make",
        "vehicle_make": "make",
        "model": "model",
        "vehicle_model": "model",
        "colour": "colour",
        "mileage": "mileage",
        "vehicle_interest": "displayName",
        "vehicleId": "id",
        "dealId": "deal.dealId",
    }
    return SelectionGroupDefinition(
        name="vehicle",
        search_field=search_field,
        populate=populate,
        hidden_fields=list(DEFAULT_HIDDEN_FIELDS),
        reserved_keys=list(DEFAULT_RESERVED_KEYS),
        search_params=dict(FORM_TYPE_SEARCH_PARAMS.get(str(form.type).upper(), {})),
    )


def selection_groups_for(form: FormDefinition) -> List[SelectionGroupDefinition]:
    if form.selection_groups:
        return list(form.selection_groups)
    group = default_vehicle_group(form)
    return [group] if group else []


def candidate_value(candidate: Dict[str, Any], path: str) -> Any:
    for option in path.split("|"):
        target: Any = candidate
        for part in option.split("."):
            if not isinstance(target, dict):
                target = None
                break
            target = target.get(part)
        if target not in (None, ""):
            return target
    return None


def _parse_candidates(data: Any) -> List[VehicleCandidate]:
    if isinstance(data, dict):
        data = data.get("vehicles") or data.get("results") or []
    if not isinstance(data, list):
        return []
    candidates = []
    for item in data:
        if isinstance(item, dict) and item.get("id") is not None:
            item = {**item, "id": str(item["id"])}
            candidates.append(VehicleCandidate.model_validate(item))
    return candidates


class SelectionMachine:
    """SEARCHING / MANUAL / SELECTED state for one governed field group."""

    def __init__(self, group: SelectionGroupDefinition) -> None:
        self.group = group
        self.state = SelectionState.SEARCHING
        self.candidates: List[VehicleCandidate] = []
        self.selected: Optional[VehicleCandidate] = None
        self.last_query = ""
        self._query_seq = 0

    def hides(self, field_name: str) -> bool:
        return self.state == SelectionState.SELECTED and field_name in self.group.hidden_fields

    def _transition(self, event: SelectionEvent) -> SelectionState:
        next_state = TRANSITIONS.get((self.state, event))
        if next_state is None:
            raise InvalidTransitionError(f"{event.value} is not allowed from {self.state.value}")
        LOGGER.info("Selection %s: %s --%s--> %s", self.group.name, self.state.value, event.value, next_state.value)
        self.state = next_state
        return next_state

    def group_fields(self, session: "FormSession") -> List[str]:
        names = [name for name in self.group.populate if session.values.is_known(name)]
        for name in self.group.reserved_keys:
            if name not in names:
                names.append(name)
        return names

    def _clear_group(self, session: "FormSession") -> List[str]:
        cleared = []
        for name in self.group_fields(session):
            if name in session.values:
                cleared.append(name)
            session.values.clear(name)
        return cleared

    def _resolve_candidate(self, candidate: Union[str, Dict[str, Any], VehicleCandidate]) -> VehicleCandidate:
        if isinstance(candidate, VehicleCandidate):
            return candidate
        if isinstance(candidate, dict):
            return VehicleCandidate.model_validate({**candidate, "id": str(candidate.get("id", ""))})
        for item in self.candidates:
            if item.id == str(candidate):
                return item
        raise KeyError(f"Unknown candidate: {candidate}")

    def pick(
        self,
        session: "FormSession",
        candidate: Union[str, Dict[str, Any], VehicleCandidate],
    ) -> List[str]:
        resolved = self._resolve_candidate(candidate)
        self._transition(SelectionEvent.PICK)
        record = resolved.model_dump(by_alias=True)
        populated = []
        for target, path in self.group.populate.items():
            if not session.values.is_known(target):
                continue
            value = candidate_value(record, path)
            if value is None:
                continue
            session.values.set(target, value, source="selection")
            populated.append(target)
        self.selected = resolved
        self.candidates = []
        return populated

    def enter_manual(self, session: "FormSession") -> None:
        self._transition(SelectionEvent.CHOOSE_MANUAL)
        self.candidates = []

    def change_selection(self, session: "FormSession") -> List[str]:
        self._transition(SelectionEvent.CHANGE_SELECTION)
        self.selected = None
        return self._clear_group(session)

    def search_instead(self, session: "FormSession") -> List[str]:
        self._transition(SelectionEvent.SEARCH_INSTEAD)
        return self._clear_group(session)

    async def search(
        self,
        session: "FormSession",
        query: str,
        services: "Services",
        *,
        debounce_s: Optional[float] = None,
    ) -> SearchOutcome:
        """Debounced inventory search; only the most recently issued query may update candidates."""
        if self.state != SelectionState.SEARCHING:
            raise InvalidTransitionError(f"search is not allowed from {self.state.value}")
        self._query_seq += 1
        seq = self._query_seq
        query = (query or "").strip()
        if session.values.is_known(self.group.search_field):
            session.values.set(self.group.search_field, query)
        if len(query) < CONFIG.search.min_query_length:
            self.candidates = []
            self.last_query = query
            return SearchOutcome(status=SearchStatus.TOO_SHORT, query=query)

        delay = CONFIG.search.debounce_ms / 1000.0 if debounce_s is None else debounce_s
        if delay > 0:
            await anyio.sleep(delay)
        if seq != self._query_seq:
            return SearchOutcome(status=SearchStatus.SUPERSEDED, query=query)

        params = dict(self.group.search_params)
        params.setdefault("limit", str(CONFIG.search.limit))
        try:
            data, error = await anyio.to_thread.run_sync(services.search_inventory, query, params)
        except Exception as exc:  # noqa: BLE001
            data, error = None, str(exc) or exc.__class__.__name__

        if not session.is_active:
            LOGGER.info("Search result for %r arrived after session closed; discarded", query)
            return SearchOutcome(status=SearchStatus.DISCARDED, query=query)
        if seq != self._query_seq or self.state != SelectionState.SEARCHING:
            LOGGER.info("Stale search result for %r discarded", query)
            return SearchOutcome(status=SearchStatus.SUPERSEDED, query=query)
        if error:
            LOGGER.warning("Inventory search failed for %r: %s", query, error)
            return SearchOutcome(status=SearchStatus.FAILED, query=query, message=error)

        self.candidates = _parse_candidates(data)
        self.last_query = query
        return SearchOutcome(status=SearchStatus.RESULTS, query=query, candidates=list(self.candidates))

    def describe(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "searchField": self.group.search_field,
            "hiddenFields": [name for name in self.group.hidden_fields if self.hides(name)],
            "candidates": [item.model_dump(by_alias=True) for item in self.candidates],
            "selected": self.selected.model_dump(by_alias=True) if self.selected else None,
            "lastQuery": self.last_query,
        }
