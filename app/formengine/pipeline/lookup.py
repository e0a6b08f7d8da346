from __future__ import annotations

import logging
import re
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

import anyio

from ..schemas import EnrichmentResult, LookupOutcome, LookupStatus
from .normalize import normalize_history_record, normalize_registry_record, normalize_vrm

if TYPE_CHECKING:
    from ..services import Services
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)

REGISTRY_SOURCE = "registry"
HISTORY_SOURCE = "history"

# Attributes where the inspection-history source wins; every other overlap goes to the registry.
HISTORY_PREFERRED = {"model", "first_used_date"}
MERGED_ATTRIBUTES = (
    "make",
    "model",
    "year",
    "colour",
    "fuel_type",
    "first_used_date",
    "transmission",
    "engine_capacity",
    "mot_expiry_date",
)

# Merged attribute -> candidate form field names it fills.
ENRICHMENT_FIELD_MAP: Dict[str, Tuple[str, ...]] = {
    "make": ("make", "vehicle_make", "vehicleMake"),
    "model": ("model", "vehicle_model", "vehicleModel"),
    "year": ("year", "vehicle_year", "vehicleYear"),
    "colour": ("colour", "color", "vehicle_colour"),
    "fuel_type": ("fuel_type", "fuelType"),
    "first_used_date": ("first_registered", "dateOfRegistration", "date_of_registration"),
    "transmission": ("transmission",),
    "engine_capacity": ("engine_capacity", "engineCapacity"),
    "mot_expiry_date": ("mot_expiry", "motExpiryDate"),
}

NOT_FOUND_MESSAGE = "Vehicle not found - please check the registration"
RE_VRM = re.compile(r"^[A-Z0-9]{2,8}$")


class WritePolicy(str, Enum):
    OVERWRITE = "overwrite"
    PRESERVE_USER_EDITS = "preserve_user_edits"


# Last lookup wins, even over values the user typed this session.
ENRICHMENT_WRITE_POLICY = WritePolicy.OVERWRITE


def merge_sources(
    vrm: str,
    registry: Optional[Dict[str, Any]],
    history: Optional[Dict[str, Any]],
) -> Optional[EnrichmentResult]:
    """Merge per attribute: history wins for model/first-used date, registry for the rest."""
    if not registry and not history:
        return None
    registry = registry or {}
    history = history or {}
    merged: Dict[str, Any] = {}
    sources: Dict[str, str] = {}
    for attr in MERGED_ATTRIBUTES:
        if attr in HISTORY_PREFERRED:
            order = ((HISTORY_SOURCE, history), (REGISTRY_SOURCE, registry))
        else:
            order = ((REGISTRY_SOURCE, registry), (HISTORY_SOURCE, history))
        for source, record in order:
            value = record.get(attr)
            if value not in (None, ""):
                merged[attr] = value
                sources[attr] = source
                break
    return EnrichmentResult(
        vrm=vrm,
        is_dummy=bool(registry.get("is_dummy")),
        sources=sources,
        **merged,
    )


async def _settle(fn: Callable[[str], Tuple[Any, Optional[str]]], vrm: str) -> Tuple[Any, Optional[str]]:
    try:
        return await anyio.to_thread.run_sync(fn, vrm)
    except Exception as exc:  # noqa: BLE001
        return None, str(exc)


async def fetch_sources(vrm: str, services: "Services") -> Dict[str, Tuple[Any, Optional[str]]]:
    """Run both lookups concurrently; each settles on its own so one failure never cancels the other."""
    settled: Dict[str, Tuple[Any, Optional[str]]] = {}

    async def _run(name: str, fn: Callable[[str], Tuple[Any, Optional[str]]]) -> None:
        settled[name] = await _settle(fn, vrm)

    async with anyio.create_task_group() as tg:
        tg.start_soon(_run, REGISTRY_SOURCE, services.registry_lookup)
        tg.start_soon(_run, HISTORY_SOURCE, services.history_lookup)
    return settled


def apply_enrichment(
    session: "FormSession",
    result: EnrichmentResult,
    identifier_field: Optional[str] = None,
    policy: WritePolicy = ENRICHMENT_WRITE_POLICY,
) -> List[str]:
    """Write resolved attributes into fields the form actually has."""
    updated = []
    if identifier_field and session.values.has_form_field(identifier_field):
        session.values.set(identifier_field, result.vrm, source="lookup")
        updated.append(identifier_field)
    for attr, field_names in ENRICHMENT_FIELD_MAP.items():
        value = getattr(result, attr)
        if value in (None, ""):
            continue
        for name in field_names:
            if not session.values.has_form_field(name):
                continue
            if policy == WritePolicy.PRESERVE_USER_EDITS and session.values.was_user_edited(name):
                continue
            session.values.set(name, value, source="lookup")
            updated.append(name)
    return updated


def parse_hints(raw: Any) -> List[str]:
    if isinstance(raw, dict):
        raw = raw.get("hints") or raw.get("hintsText")
    if isinstance(raw, list):
        return [str(item).strip() for item in raw if str(item).strip()]
    if isinstance(raw, str):
        lines = [re.sub(r"^\s*(?:[-•*]|\d+\.)\s*", "", line).strip() for line in raw.split("\n")]
        return [line for line in lines if line]
    return []


async def fetch_hints(result: EnrichmentResult, services: "Services", mileage: Any = None) -> List[str]:
    """Contextual hints for the looked-up vehicle. Any failure yields an empty list."""
    if not result.make or not result.model:
        return []
    payload = {"make": result.make, "model": result.model, "year": result.year}
    if mileage not in (None, ""):
        payload["mileage"] = mileage
    try:
        data, error = await anyio.to_thread.run_sync(services.fetch_hints, payload)
    except Exception as exc:  # noqa: BLE001
        data, error = None, str(exc)
    if error:
        LOGGER.info("Hints unavailable for %s %s: %s", result.make, result.model, error)
        return []
    return parse_hints(data)


async def lookup_vehicle(session: "FormSession", field_name: str, services: "Services") -> LookupOutcome:
    vrm = normalize_vrm(session.values.get(field_name))
    if not vrm:
        return LookupOutcome(status=LookupStatus.INVALID, message="Enter a registration number first")
    if not RE_VRM.match(vrm):
        return LookupOutcome(status=LookupStatus.INVALID, message=f"{vrm} is not a valid registration")

    LOGGER.info("Looking up %s", vrm)
    settled = await fetch_sources(vrm, services)
    if not session.is_active:
        LOGGER.info("Lookup for %s finished after session closed; discarded", vrm)
        return LookupOutcome(status=LookupStatus.DISCARDED)

    registry_raw, registry_error = settled[REGISTRY_SOURCE]
    history_raw, history_error = settled[HISTORY_SOURCE]
    registry = None if registry_error else normalize_registry_record(registry_raw)
    history = None if history_error else normalize_history_record(history_raw)

    degraded = []
    if registry is None:
        degraded.append(REGISTRY_SOURCE)
        LOGGER.info("Registry lookup unavailable for %s: %s", vrm, registry_error or "empty response")
    if history is None:
        degraded.append(HISTORY_SOURCE)
        LOGGER.info("History lookup unavailable for %s: %s", vrm, history_error or "empty response")

    result = merge_sources(vrm, registry, history)
    if result is None:
        LOGGER.warning("Both lookup sources failed for %s", vrm)
        return LookupOutcome(status=LookupStatus.NOT_FOUND, message=NOT_FOUND_MESSAGE, degraded_sources=degraded)

    updated = apply_enrichment(session, result, identifier_field=field_name)
    mileage_field = next((name for name in ("mileage", "vehicle_mileage") if session.values.has_form_field(name)), None)
    hints = await fetch_hints(result, services, session.values.get(mileage_field) if mileage_field else None)
    if session.is_active:
        session.hints = hints

    message = "Demo data loaded" if result.is_dummy else "Vehicle details found"
    return LookupOutcome(
        status=LookupStatus.FOUND,
        message=message,
        result=result,
        updated_fields=updated,
        degraded_sources=degraded,
        hints=hints,
    )
