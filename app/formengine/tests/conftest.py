import sys
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from formengine.schemas import FormDefinition  # noqa: E402
from formengine.services import RawFile, Services  # noqa: E402
from formengine.session import FormSession  # noqa: E402

SERVICE_NAMES = (
    "registry_lookup",
    "history_lookup",
    "extract_document",
    "upload_file",
    "search_inventory",
    "fetch_hints",
    "submit_form",
)


def unavailable(*_args: Any):
    return None, "service unavailable"


def build_services(**overrides: Any) -> Services:
    handlers = {name: unavailable for name in SERVICE_NAMES}
    handlers.update(overrides)
    return Services(**handlers)


class UploadStub:
    """Upload collaborator that hands out sequential storage keys and signed URLs."""

    def __init__(self) -> None:
        self.received: List[RawFile] = []

    def __call__(self, raw: RawFile):
        self.received.append(raw)
        n = len(self.received)
        return {
            "storageKey": f"uploads/{n}-{raw.filename}",
            "previewUrl": f"https://cdn.example.com/uploads/{n}?sig=abc",
            "filename": raw.filename,
            "size": raw.size,
        }, None


def image_bytes(size=(40, 30), fmt: str = "PNG") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def png_file() -> RawFile:
    return RawFile(filename="photo.png", content=image_bytes(), mime_type="image/png")


@pytest.fixture
def upload_stub() -> UploadStub:
    return UploadStub()


def appraisal_form_dict() -> Dict[str, Any]:
    return {
        "id": "form-appraisal",
        "name": "Part Exchange Appraisal",
        "type": "APPRAISAL",
        "staticText": ["Thank you for choosing {dealer.companyName}."],
        "fields": [
            {"fieldName": "intro", "label": "Welcome to {dealer.companyName}", "type": "SECTION_HEADER"},
            {"fieldName": "reg", "label": "Registration", "type": "TEXT", "required": True},
            {"fieldName": "make", "label": "Make", "type": "TEXT"},
            {"fieldName": "model", "label": "Model", "type": "TEXT"},
            {"fieldName": "year", "label": "Year", "type": "NUMBER"},
            {"fieldName": "first_registered", "label": "First registered", "type": "DATE"},
            {"fieldName": "mileage", "label": "Mileage", "type": "NUMBER", "required": True},
            {
                "fieldName": "condition",
                "label": "Condition",
                "type": "DROPDOWN",
                "options": {"choices": ["Excellent", "Good", "Fair", "Poor"]},
            },
            {"fieldName": "service_history", "label": "Full service history", "type": "BOOLEAN", "required": True},
            {"fieldName": "photos", "label": "Photos", "type": "FILE", "multiple": True},
        ],
    }


def drive_form_dict() -> Dict[str, Any]:
    return {
        "id": "form-test-drive",
        "name": "Test Drive",
        "type": "TEST_DRIVE",
        "fields": [
            {"fieldName": "vrm", "label": "Vehicle", "type": "TEXT", "required": True},
            {"fieldName": "make", "label": "Make", "type": "TEXT", "required": True},
            {"fieldName": "model", "label": "Model", "type": "TEXT", "required": True},
            {"fieldName": "mileage", "label": "Mileage out", "type": "NUMBER"},
            {"fieldName": "drive_date", "label": "Date", "type": "DATE", "required": True},
            {"fieldName": "drive_time", "label": "Time", "type": "TIME"},
            {"fieldName": "licence", "label": "Driving licence", "type": "LICENCE_SCAN", "required": True},
            {
                "fieldName": "first_name",
                "label": "First name",
                "type": "TEXT",
                "required": True,
                "extractionSourceKey": "firstName",
            },
            {"fieldName": "last_name", "label": "Last name", "type": "TEXT", "extractionSourceKey": "lastName"},
            {
                "fieldName": "date_of_birth",
                "label": "Date of birth",
                "type": "DATE",
                "autoFillFromLicence": "dateOfBirth",
            },
            {"fieldName": "signature", "label": "Signature", "type": "SIGNATURE", "required": True},
        ],
    }


def pdi_form_dict() -> Dict[str, Any]:
    return {
        "id": "form-pdi",
        "name": "Pre-Delivery Inspection",
        "type": "PDI",
        "fields": [
            {"fieldName": "vrm", "label": "Vehicle", "type": "TEXT", "required": True},
            {"fieldName": "rating", "label": "Overall condition", "type": "RATING"},
            {"fieldName": "issues", "label": "Issues found", "type": "PDI_ISSUES"},
        ],
    }


@pytest.fixture
def appraisal_session() -> FormSession:
    return FormSession(FormDefinition.model_validate(appraisal_form_dict()), {"companyName": "Acme Motors"})


@pytest.fixture
def drive_session() -> FormSession:
    return FormSession(FormDefinition.model_validate(drive_form_dict()), {"name": "Acme Motors"})


@pytest.fixture
def pdi_session() -> FormSession:
    return FormSession(FormDefinition.model_validate(pdi_form_dict()))


@pytest.fixture
def services_factory():
    return build_services


@pytest.fixture
def make_image():
    return image_bytes


@pytest.fixture
def appraisal_form() -> Dict[str, Any]:
    return appraisal_form_dict()


@pytest.fixture
def drive_form() -> Dict[str, Any]:
    return drive_form_dict()


@pytest.fixture
def pdi_form() -> Dict[str, Any]:
    return pdi_form_dict()
