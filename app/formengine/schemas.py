from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class FieldType(str, Enum):
    TEXT = "TEXT"
    TEXTAREA = "TEXTAREA"
    NUMBER = "NUMBER"
    DATE = "DATE"
    DATETIME = "DATETIME"
    TIME = "TIME"
    DROPDOWN = "DROPDOWN"
    RADIO = "RADIO"
    BOOLEAN = "BOOLEAN"
    RATING = "RATING"
    FILE = "FILE"
    SIGNATURE = "SIGNATURE"
    SECTION_HEADER = "SECTION_HEADER"
    PARAGRAPH = "PARAGRAPH"
    LICENCE_SCAN = "LICENCE_SCAN"
    PDI_ISSUES = "PDI_ISSUES"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FieldOptions(CamelModel):
    choices: List[str] = Field(default_factory=list)


class FieldDefinition(CamelModel):
    field_name: str = Field(alias="fieldName")
    label: str = ""
    # Kept as the raw tag so unknown tags survive parsing and fall back at dispatch.
    type: str = FieldType.TEXT.value
    required: bool = False
    options: Optional[FieldOptions] = None
    extraction_source_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("extractionSourceKey", "autoFillFromLicence", "extraction_source_key"),
        serialization_alias="extractionSourceKey",
    )
    multiple: bool = False

    @property
    def choices(self) -> List[str]:
        return list(self.options.choices) if self.options else []


class SelectionGroupDefinition(CamelModel):
    name: str
    search_field: str = Field(alias="searchField")
    # target field name -> candidate attribute path ("a|b" tries alternatives, "deal.dealId" walks).
    populate: Dict[str, str] = Field(default_factory=dict)
    hidden_fields: List[str] = Field(default_factory=list, alias="hiddenFields")
    reserved_keys: List[str] = Field(default_factory=list, alias="reservedKeys")
    search_params: Dict[str, str] = Field(default_factory=dict, alias="searchParams")


class FormDefinition(CamelModel):
    id: str
    name: str = ""
    type: Optional[str] = None
    fields: List[FieldDefinition] = Field(default_factory=list)
    static_text: List[str] = Field(default_factory=list, alias="staticText")
    selection_groups: List[SelectionGroupDefinition] = Field(default_factory=list, alias="selectionGroups")

    @model_validator(mode="after")
    def _unique_field_names(self) -> "FormDefinition":
        seen = set()
        for spec in self.fields:
            if spec.field_name in seen:
                raise ValueError(f"Duplicate fieldName: {spec.field_name}")
            seen.add(spec.field_name)
        return self

    def get_field(self, field_name: str) -> Optional[FieldDefinition]:
        for spec in self.fields:
            if spec.field_name == field_name:
                return spec
        return None


class UploadedAsset(CamelModel):
    field_name: str = Field(alias="fieldName")
    storage_key: str = Field(alias="storageKey")
    preview_url: Optional[str] = Field(default=None, alias="previewUrl")
    filename: str = ""
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    size: int = 0


class IssueRecord(CamelModel):
    id: str
    category: str = ""
    subcategory: str = ""
    description: str = ""
    action_needed: str = Field(default="", alias="actionNeeded")
    estimated_cost: Optional[float] = Field(default=None, alias="estimatedCost")
    status: str = "outstanding"
    notes: str = ""
    # Storage keys only; the matching UploadedAsset records live in the asset ledger.
    photos: List[str] = Field(default_factory=list)


class VehicleCandidate(CamelModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    vrm: Optional[str] = None
    reg_current: Optional[str] = Field(default=None, alias="regCurrent")
    make: Optional[str] = None
    model: Optional[str] = None
    colour: Optional[str] = None
    mileage: Optional[Any] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    deal: Optional[Dict[str, Any]] = None


class EnrichmentResult(BaseModel):
    vrm: str
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    colour: Optional[str] = None
    fuel_type: Optional[str] = None
    first_used_date: Optional[str] = None
    transmission: Optional[str] = None
    engine_capacity: Optional[int] = None
    mot_expiry_date: Optional[str] = None
    is_dummy: bool = False
    sources: Dict[str, str] = Field(default_factory=dict)


class ValidationIssue(BaseModel):
    field: str
    severity: str
    rule: str
    message: str


class ValidationReport(BaseModel):
    ok: bool
    issues: List[ValidationIssue] = Field(default_factory=list)

    def errors_by_field(self) -> Dict[str, str]:
        return {issue.field: issue.message for issue in self.issues if issue.severity == "error"}


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    DISCARDED = "discarded"


class LookupOutcome(BaseModel):
    status: LookupStatus
    message: str = ""
    result: Optional[EnrichmentResult] = None
    updated_fields: List[str] = Field(default_factory=list)
    degraded_sources: List[str] = Field(default_factory=list)
    hints: List[str] = Field(default_factory=list)


class UploadStatus(str, Enum):
    UPLOADED = "uploaded"
    REJECTED = "rejected"
    FAILED = "failed"
    DISCARDED = "discarded"


class UploadOutcome(BaseModel):
    status: UploadStatus
    field_name: str
    message: str = ""
    asset: Optional[UploadedAsset] = None


class ExtractionStatus(str, Enum):
    EXTRACTED = "extracted"
    NO_MAPPABLE_FIELDS = "no_mappable_fields"
    FAILED = "failed"
    DISCARDED = "discarded"


class ExtractionOutcome(BaseModel):
    status: ExtractionStatus
    field_name: str
    message: str = ""
    stage: Optional[str] = None
    asset: Optional[UploadedAsset] = None
    mapped_fields: List[str] = Field(default_factory=list)


class SearchStatus(str, Enum):
    RESULTS = "results"
    TOO_SHORT = "too_short"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    DISCARDED = "discarded"


class SearchOutcome(BaseModel):
    status: SearchStatus
    query: str
    candidates: List[VehicleCandidate] = Field(default_factory=list)
    message: str = ""


class SubmissionStatus(str, Enum):
    SUBMITTED = "submitted"
    INVALID = "invalid"
    IN_FLIGHT = "in_flight"
    ALREADY_SUBMITTED = "already_submitted"
    FAILED = "failed"


class SubmissionPayload(CamelModel):
    form_id: str = Field(alias="formId")
    values: Dict[str, Any] = Field(default_factory=dict)
    assets: List[UploadedAsset] = Field(default_factory=list)


class SubmissionOutcome(BaseModel):
    status: SubmissionStatus
    message: str = ""
    report: Optional[ValidationReport] = None
    response: Optional[Dict[str, Any]] = None
