from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from .config import CONFIG, ServiceConfig

LOGGER = logging.getLogger(__name__)

ServiceResult = Tuple[Optional[Any], Optional[str]]


@dataclass(frozen=True)
class RawFile:
    filename: str
    content: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class Services:
    """Outbound collaborators. Every callable returns ``(data, error)`` and never raises."""

    registry_lookup: Callable[[str], ServiceResult]
    history_lookup: Callable[[str], ServiceResult]
    extract_document: Callable[[str, str], ServiceResult]
    upload_file: Callable[[RawFile], ServiceResult]
    search_inventory: Callable[[str, Dict[str, str]], ServiceResult]
    fetch_hints: Callable[[Dict[str, Any]], ServiceResult]
    submit_form: Callable[[Dict[str, Any]], ServiceResult]


def _error_text(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.reason or f"HTTP {resp.status_code}"


def _request_json(
    method: str,
    url: Optional[str],
    timeout: float,
    *,
    service: str,
    **kwargs: Any,
) -> ServiceResult:
    if not url:
        return None, f"{service} endpoint not configured"
    try:
        resp = requests.request(method, url, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        LOGGER.warning("%s request failed: %s", service, exc)
        return None, f"{service} request failed: {exc}"
    if resp.status_code == 404:
        return None, "not found"
    if not resp.ok:
        LOGGER.warning("%s returned HTTP %s", service, resp.status_code)
        return None, f"{service} error: {_error_text(resp)}"
    try:
        return resp.json(), None
    except ValueError:
        return None, f"{service} returned invalid JSON"


class HttpServices:
    """requests-backed collaborators configured from ``ServiceConfig``."""

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config

    def registry_lookup(self, vrm: str) -> ServiceResult:
        LOGGER.debug("Registry lookup for %s", vrm)
        return _request_json(
            "POST",
            self.config.registry_url,
            self.config.timeout_s,
            service="Registry lookup",
            json={"vehicleReg": vrm},
        )

    def history_lookup(self, vrm: str) -> ServiceResult:
        LOGGER.debug("History lookup for %s", vrm)
        return _request_json(
            "GET",
            self.config.history_url,
            self.config.timeout_s,
            service="History lookup",
            params={"vrm": vrm},
        )

    def extract_document(self, image_b64: str, mime_type: str) -> ServiceResult:
        data, error = _request_json(
            "POST",
            self.config.extraction_url,
            self.config.timeout_s,
            service="Extraction",
            json={"image": image_b64, "mimeType": mime_type},
        )
        if error:
            return None, error
        if not isinstance(data, dict) or not data.get("ok") or not isinstance(data.get("data"), dict):
            message = data.get("error") if isinstance(data, dict) else None
            return None, message or "Extraction returned no data"
        return data["data"], None

    def upload_file(self, raw: RawFile) -> ServiceResult:
        LOGGER.debug("Uploading %s (%d bytes)", raw.filename, raw.size)
        return _request_json(
            "POST",
            self.config.upload_url,
            self.config.timeout_s,
            service="Upload",
            files={"file": (raw.filename, raw.content, raw.mime_type)},
        )

    def search_inventory(self, query: str, params: Dict[str, str]) -> ServiceResult:
        return _request_json(
            "GET",
            self.config.search_url,
            self.config.timeout_s,
            service="Inventory search",
            params={"q": query, **params},
        )

    def fetch_hints(self, payload: Dict[str, Any]) -> ServiceResult:
        return _request_json(
            "POST",
            self.config.hints_url,
            self.config.timeout_s,
            service="Hints",
            json=payload,
        )

    def submit_form(self, payload: Dict[str, Any]) -> ServiceResult:
        return _request_json(
            "POST",
            self.config.submission_url,
            self.config.timeout_s,
            service="Submission",
            json=payload,
        )


def default_services(config: Optional[ServiceConfig] = None) -> Services:
    client = HttpServices(config or CONFIG.services)
    return Services(
        registry_lookup=client.registry_lookup,
        history_lookup=client.history_lookup,
        extract_document=client.extract_document,
        upload_file=client.upload_file,
        search_inventory=client.search_inventory,
        fetch_hints=client.fetch_hints,
        submit_form=client.submit_form,
    )
