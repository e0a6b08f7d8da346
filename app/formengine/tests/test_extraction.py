from __future__ import annotations

import base64
import dataclasses
from io import BytesIO

import anyio
from PIL import Image

from formengine.config import CONFIG
from formengine.field_registry import check_required
from formengine.pipeline import extraction
from formengine.pipeline.extraction import apply_extraction, capture_licence, clear_extraction, licence_fields
from formengine.schemas import ExtractionStatus
from formengine.services import RawFile


LICENCE_DATA = {
    "firstName": "Jane",
    "lastName": "Doe",
    "dateOfBirth": "14/02/1988",
    "confidence": 0.92,
    "missingFields": [],
}


def test_licence_fields(drive_session) -> None:
    assert licence_fields(drive_session) == ["licence"]


def test_apply_then_clear_restores_prior_values(drive_session) -> None:
    drive_session.values.set("last_name", "Smith")

    mapped = apply_extraction(drive_session, "licence", LICENCE_DATA)

    assert mapped == ["first_name", "last_name", "date_of_birth"]
    assert drive_session.values.get("first_name") == "Jane"
    assert drive_session.values.get("last_name") == "Doe"
    assert drive_session.values.get("date_of_birth") == "1988-02-14"

    restored = clear_extraction(drive_session, "licence")

    assert sorted(restored) == ["date_of_birth", "first_name", "last_name"]
    assert "first_name" not in drive_session.values
    assert "date_of_birth" not in drive_session.values
    assert drive_session.values.get("last_name") == "Smith"


def test_repeated_apply_keeps_first_snapshot(drive_session) -> None:
    apply_extraction(drive_session, "licence", {"firstName": "Jane"})
    apply_extraction(drive_session, "licence", {"firstName": "Janet"})
    assert drive_session.values.get("first_name") == "Janet"
    clear_extraction(drive_session, "licence")
    assert "first_name" not in drive_session.values


def test_bookkeeping_keys_never_map(drive_session) -> None:
    assert apply_extraction(drive_session, "licence", {"confidence": 0.5, "missingFields": ["firstName"]}) == []
    assert drive_session.extraction_snapshots == {}


def test_capture_success(drive_session, services_factory, upload_stub, png_file) -> None:
    seen = {}

    def extract(image_b64, mime_type):
        seen["mime"] = mime_type
        seen["bytes"] = base64.b64decode(image_b64)
        return dict(LICENCE_DATA), None

    services = services_factory(upload_file=upload_stub, extract_document=extract)

    outcome = anyio.run(capture_licence, drive_session, "licence", png_file, services)

    assert outcome.status == ExtractionStatus.EXTRACTED
    assert outcome.message == extraction.EXTRACTED_MESSAGE
    assert seen["mime"] == "image/png"
    assert seen["bytes"] == png_file.content
    assert drive_session.values.get("licence") == "uploads/1-photo.png"
    assert drive_session.values.get("first_name") == "Jane"


def test_capture_extraction_failure_keeps_asset(drive_session, services_factory, upload_stub, png_file) -> None:
    drive_session.values.set("first_name", "Typed")
    services = services_factory(upload_file=upload_stub)

    outcome = anyio.run(capture_licence, drive_session, "licence", png_file, services)

    assert outcome.status == ExtractionStatus.FAILED
    assert outcome.stage == "extraction"
    assert outcome.message == extraction.EXTRACTION_FAILED_MESSAGE
    assert outcome.message != extraction.NO_MAPPING_MESSAGE
    assert outcome.asset.storage_key == "uploads/1-photo.png"
    assert drive_session.values.get("first_name") == "Typed"
    assert "last_name" not in drive_session.values
    spec = drive_session.field("licence")
    assert check_required(spec, drive_session.values.get("licence"), drive_session.required_context("licence")) is None


def test_capture_no_mappable_fields(drive_session, services_factory, upload_stub, png_file) -> None:
    services = services_factory(upload_file=upload_stub, extract_document=lambda *_: ({"confidence": 0.1}, None))

    outcome = anyio.run(capture_licence, drive_session, "licence", png_file, services)

    assert outcome.status == ExtractionStatus.NO_MAPPABLE_FIELDS
    assert outcome.message == extraction.NO_MAPPING_MESSAGE
    assert drive_session.values.get("licence") == "uploads/1-photo.png"


def test_capture_upload_failure_skips_extraction(drive_session, services_factory, png_file) -> None:
    called = []

    def extract(*args):
        called.append(args)
        return dict(LICENCE_DATA), None

    services = services_factory(extract_document=extract)

    outcome = anyio.run(capture_licence, drive_session, "licence", png_file, services)

    assert outcome.status == ExtractionStatus.FAILED
    assert outcome.stage == "upload"
    assert called == []
    assert "licence" not in drive_session.values


def test_capture_after_close_is_discarded(drive_session, services_factory, upload_stub, png_file) -> None:
    def extract(*_args):
        drive_session.close()
        return dict(LICENCE_DATA), None

    services = services_factory(upload_file=upload_stub, extract_document=extract)

    outcome = anyio.run(capture_licence, drive_session, "licence", png_file, services)

    assert outcome.status == ExtractionStatus.DISCARDED
    assert "first_name" not in drive_session.values


def test_clear_removes_licence_asset(drive_session, services_factory, upload_stub, png_file) -> None:
    services = services_factory(upload_file=upload_stub, extract_document=lambda *_: (dict(LICENCE_DATA), None))
    anyio.run(capture_licence, drive_session, "licence", png_file, services)

    clear_extraction(drive_session, "licence")

    assert "licence" not in drive_session.values
    assert drive_session.assets.for_field("licence") == []
    assert "first_name" not in drive_session.values


def test_encode_image_uses_configured_edge(monkeypatch, make_image) -> None:
    small_edge = dataclasses.replace(CONFIG.upload, image_max_edge=100)
    monkeypatch.setattr(extraction, "CONFIG", dataclasses.replace(CONFIG, upload=small_edge))
    raw = RawFile(filename="big.png", content=make_image((400, 200)), mime_type="image/png")

    encoded = extraction.encode_image(raw)

    with Image.open(BytesIO(base64.b64decode(encoded))) as image:
        assert image.size == (100, 50)
    with Image.open(BytesIO(base64.b64decode(extraction.encode_image(raw, 50)))) as image:
        assert image.size == (50, 25)
