from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, Optional

from dateutil import parser

FUEL_TYPE_ALIASES = {
    "PETROL": "PETROL",
    "DIESEL": "DIESEL",
    "ELECTRIC": "ELECTRIC",
    "ELECTRICITY": "ELECTRIC",
    "HYBRID": "HYBRID",
    "HYBRID ELECTRIC": "HYBRID",
    "PLUG-IN HYBRID": "HYBRID",
    "PETROL/ELECTRIC HYBRID": "HYBRID",
    "DIESEL/ELECTRIC HYBRID": "HYBRID",
    "GAS": "GAS",
    "LPG": "LPG",
    "CNG": "CNG",
    "BI FUEL": "BI FUEL",
    "HYDROGEN": "HYDROGEN",
}

TRANSMISSION_ALIASES = {
    "MANUAL": "MANUAL",
    "M": "MANUAL",
    "AUTOMATIC": "AUTOMATIC",
    "AUTO": "AUTOMATIC",
    "A": "AUTOMATIC",
    "SEMI-AUTOMATIC": "SEMI-AUTOMATIC",
    "CVT": "AUTOMATIC",
}


def normalize_vrm(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", "", str(value)).upper()


def normalize_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def normalize_upper(value: Any) -> Optional[str]:
    text = normalize_text(value)
    return text.upper() if text else None


def normalize_fuel_type(value: Optional[str]) -> Optional[str]:
    key = normalize_upper(value)
    if not key:
        return None
    return FUEL_TYPE_ALIASES.get(key, key)


def normalize_transmission(value: Optional[str]) -> Optional[str]:
    key = normalize_upper(value)
    if not key:
        return None
    return TRANSMISSION_ALIASES.get(key, key)


def normalize_year(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    match = re.search(r"(19|20)\d{2}", str(value))
    if not match:
        return None
    return int(match.group(0))


def normalize_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def normalize_date(value: Any) -> Optional[str]:
    """Return an ISO ``YYYY-MM-DD`` date, or None when the value is not a date."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    # Registry-style dotted dates (2015.03.12) parse as year-first.
    if re.match(r"^\d{4}[./-]\d{1,2}[./-]\d{1,2}", text):
        text = re.sub(r"[./]", "-", text[:10])
        try:
            return parser.isoparse(text).date().isoformat()
        except ValueError:
            return None
    try:
        # Partial dates ("2015-03") land on the first of the month.
        return parser.parse(text, dayfirst=True, default=dt.datetime(1900, 1, 1)).date().isoformat()
    except (ValueError, OverflowError):
        return None


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def normalize_registry_record(raw: Any) -> Optional[Dict[str, Any]]:
    """Map a vehicle-registry response onto the enrichment attribute names."""
    if not isinstance(raw, dict) or not raw:
        return None
    record = {
        "vrm": normalize_vrm(_first(raw, "registrationNumber", "vrm")) or None,
        "make": normalize_text(raw.get("make")),
        "model": normalize_text(raw.get("model")),
        "year": normalize_year(_first(raw, "yearOfManufacture", "year")),
        "colour": normalize_text(_first(raw, "colour", "color")),
        "fuel_type": normalize_fuel_type(raw.get("fuelType")),
        "transmission": normalize_transmission(raw.get("transmission")),
        "engine_capacity": normalize_int(raw.get("engineCapacity")),
        "mot_expiry_date": normalize_date(raw.get("motExpiryDate")),
        "first_used_date": normalize_date(raw.get("monthOfFirstRegistration")),
        "is_dummy": bool(raw.get("isDummy")),
    }
    return {key: value for key, value in record.items() if value not in (None, "")}


def normalize_history_record(raw: Any) -> Optional[Dict[str, Any]]:
    """Map an inspection-history response onto the enrichment attribute names."""
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if not isinstance(raw, dict) or not raw:
        return None
    record = {
        "vrm": normalize_vrm(_first(raw, "registration", "vrm")) or None,
        "make": normalize_text(raw.get("make")),
        "model": normalize_text(raw.get("model")),
        "year": normalize_year(_first(raw, "yearOfManufacture", "manufactureYear", "manufactureDate")),
        "colour": normalize_text(_first(raw, "primaryColour", "colour")),
        "fuel_type": normalize_fuel_type(raw.get("fuelType")),
        "first_used_date": normalize_date(_first(raw, "firstUsedDate", "registrationDate")),
    }
    return {key: value for key, value in record.items() if value not in (None, "")}
