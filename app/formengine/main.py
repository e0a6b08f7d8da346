from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from fastapi import FastAPI, File, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import CONFIG
from .field_registry import behavior_for, field_types_payload
from .pipeline.extraction import capture_licence, clear_extraction
from .pipeline.issues import IssueEditError, IssueListEditor, normalize_issue_value
from .pipeline.lookup import lookup_vehicle
from .pipeline.selection import InvalidTransitionError, SelectionMachine
from .pipeline.submission import submit_session
from .pipeline.uploads import upload_field_file
from .pipeline.validate import validate_session
from .schemas import FieldType, FormDefinition, SubmissionStatus
from .services import RawFile, default_services
from .session import FormSession

logging.basicConfig(level=CONFIG.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
LOGGER = logging.getLogger("formengine")

SESSIONS: Dict[str, FormSession] = {}

SUBMISSION_STATUS_CODES = {
    SubmissionStatus.SUBMITTED: 200,
    SubmissionStatus.INVALID: 422,
    SubmissionStatus.IN_FLIGHT: 409,
    SubmissionStatus.ALREADY_SUBMITTED: 409,
    SubmissionStatus.FAILED: 502,
}

app = FastAPI(title="Form Engine")
app.state.services = default_services()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/field_types")
async def field_types() -> Dict[str, object]:
    return field_types_payload()


def _get_session(session_id: str) -> Tuple[Optional[FormSession], Optional[JSONResponse]]:
    session = SESSIONS.get(session_id)
    if session is None:
        return None, JSONResponse({"error": "Session not found"}, status_code=404)
    return session, None


def _get_active_session(session_id: str) -> Tuple[Optional[FormSession], Optional[JSONResponse]]:
    session, error = _get_session(session_id)
    if error:
        return None, error
    if session.closed:
        return None, JSONResponse({"error": "Session is closed"}, status_code=410)
    if session.submitted:
        return None, JSONResponse({"error": "Form already submitted"}, status_code=409)
    return session, None


def _get_selection(session: FormSession, group: str) -> Tuple[Optional[SelectionMachine], Optional[JSONResponse]]:
    machine = session.selections.get(group)
    if machine is None:
        return None, JSONResponse({"error": f"Unknown selection group: {group}"}, status_code=404)
    return machine, None


async def _read_upload(upload: UploadFile) -> RawFile:
    content = await upload.read()
    return RawFile(
        filename=upload.filename or "upload",
        content=content,
        mime_type=upload.content_type or "application/octet-stream",
    )


def _services():
    return app.state.services


@app.post("/sessions")
async def open_session(payload: Dict):
    if not isinstance(payload, dict) or not isinstance(payload.get("form"), dict):
        return JSONResponse({"error": "Missing form definition"}, status_code=400)
    try:
        form = FormDefinition.model_validate(payload["form"])
    except ValidationError as exc:
        details = exc.errors(include_url=False, include_context=False)
        return JSONResponse({"error": "Invalid form definition", "details": details}, status_code=400)
    dealer = payload.get("dealer") if isinstance(payload.get("dealer"), dict) else None
    session = FormSession(form, dealer)
    session.apply_default_values()
    SESSIONS[session.id] = session
    LOGGER.info("Opened session %s for form %s (%d fields)", session.id, form.id, len(form.fields))
    return JSONResponse(session.render())


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error
    return JSONResponse(session.render())


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error
    session.close()
    SESSIONS.pop(session_id, None)
    return JSONResponse({"sessionId": session_id, "closed": True})


@app.post("/sessions/{session_id}/values")
async def set_values(session_id: str, payload: Dict):
    session, error = _get_active_session(session_id)
    if error:
        return error
    values = payload.get("values") if isinstance(payload, dict) else None
    if not isinstance(values, dict):
        return JSONResponse({"error": "Missing values"}, status_code=400)
    prepared = {}
    for name, value in values.items():
        spec = session.field(name)
        if not session.values.is_known(name):
            return JSONResponse({"error": f"Unknown field: {name}"}, status_code=400)
        if value is not None and spec is not None and behavior_for(spec).field_type == FieldType.PDI_ISSUES:
            try:
                value = normalize_issue_value(value)
            except IssueEditError as exc:
                return JSONResponse({"error": str(exc)}, status_code=400)
        prepared[name] = value
    for name, value in prepared.items():
        if value is None:
            session.values.clear(name)
        else:
            session.values.set(name, value)
    return JSONResponse(session.render())


@app.post("/sessions/{session_id}/lookup")
async def lookup(session_id: str, payload: Dict):
    session, error = _get_active_session(session_id)
    if error:
        return error
    field_name = payload.get("field") if isinstance(payload, dict) else None
    if not field_name or session.field(field_name) is None:
        return JSONResponse({"error": "Missing or unknown lookup field"}, status_code=400)
    outcome = await lookup_vehicle(session, field_name, _services())
    return JSONResponse({"outcome": outcome.model_dump(mode="json"), "form": session.render()})


@app.post("/sessions/{session_id}/files/{field_name}")
async def upload_file(session_id: str, field_name: str, file: UploadFile = File(...)):
    session, error = _get_active_session(session_id)
    if error:
        return error
    raw = await _read_upload(file)
    outcome = await upload_field_file(session, field_name, raw, _services())
    return JSONResponse({"outcome": outcome.model_dump(mode="json", by_alias=True), "form": session.render()})


@app.post("/sessions/{session_id}/licence/{field_name}")
async def capture(session_id: str, field_name: str, file: UploadFile = File(...)):
    session, error = _get_active_session(session_id)
    if error:
        return error
    raw = await _read_upload(file)
    outcome = await capture_licence(session, field_name, raw, _services())
    return JSONResponse({"outcome": outcome.model_dump(mode="json", by_alias=True), "form": session.render()})


@app.post("/sessions/{session_id}/licence/{field_name}/clear")
async def clear_licence(session_id: str, field_name: str):
    session, error = _get_active_session(session_id)
    if error:
        return error
    spec = session.field(field_name)
    if spec is None:
        return JSONResponse({"error": f"Unknown field: {field_name}"}, status_code=400)
    if behavior_for(spec).field_type != FieldType.LICENCE_SCAN:
        return JSONResponse({"error": f"{field_name} is not a licence scan field"}, status_code=400)
    restored = clear_extraction(session, field_name)
    return JSONResponse({"restored": restored, "form": session.render()})


@app.post("/sessions/{session_id}/selection/{group}/search")
async def selection_search(session_id: str, group: str, payload: Dict):
    session, error = _get_active_session(session_id)
    if error:
        return error
    machine, error = _get_selection(session, group)
    if error:
        return error
    query = payload.get("query", "") if isinstance(payload, dict) else ""
    try:
        outcome = await machine.search(session, str(query or ""), _services())
    except InvalidTransitionError as exc:
        return JSONResponse({"error": str(exc)}, status_code=409)
    return JSONResponse({"outcome": outcome.model_dump(mode="json", by_alias=True), "form": session.render()})


@app.post("/sessions/{session_id}/selection/{group}/pick")
async def selection_pick(session_id: str, group: str, payload: Dict):
    session, error = _get_active_session(session_id)
    if error:
        return error
    machine, error = _get_selection(session, group)
    if error:
        return error
    candidate = payload.get("candidate") or payload.get("candidateId") if isinstance(payload, dict) else None
    if not candidate:
        return JSONResponse({"error": "Missing candidate"}, status_code=400)
    try:
        populated = machine.pick(session, candidate)
    except InvalidTransitionError as exc:
        return JSONResponse({"error": str(exc)}, status_code=409)
    except KeyError as exc:
        return JSONResponse({"error": str(exc.args[0])}, status_code=404)
    return JSONResponse({"populated": populated, "form": session.render()})


async def _selection_event(session_id: str, group: str, event: str):
    session, error = _get_active_session(session_id)
    if error:
        return error
    machine, error = _get_selection(session, group)
    if error:
        return error
    cleared: List[str] = []
    try:
        if event == "manual":
            machine.enter_manual(session)
        elif event == "change":
            cleared = machine.change_selection(session)
        else:
            cleared = machine.search_instead(session)
    except InvalidTransitionError as exc:
        return JSONResponse({"error": str(exc)}, status_code=409)
    return JSONResponse({"cleared": cleared, "form": session.render()})


@app.post("/sessions/{session_id}/selection/{group}/manual")
async def selection_manual(session_id: str, group: str):
    return await _selection_event(session_id, group, "manual")


@app.post("/sessions/{session_id}/selection/{group}/change")
async def selection_change(session_id: str, group: str):
    return await _selection_event(session_id, group, "change")


@app.post("/sessions/{session_id}/selection/{group}/search_instead")
async def selection_search_instead(session_id: str, group: str):
    return await _selection_event(session_id, group, "search_instead")


def _issue_editor(session_id: str, field_name: str) -> Tuple[Optional[IssueListEditor], Optional[JSONResponse]]:
    session, error = _get_active_session(session_id)
    if error:
        return None, error
    try:
        return IssueListEditor(session, field_name), None
    except IssueEditError as exc:
        return None, JSONResponse({"error": str(exc)}, status_code=400)


@app.post("/sessions/{session_id}/issues/{field_name}")
async def add_issue(session_id: str, field_name: str):
    editor, error = _issue_editor(session_id, field_name)
    if error:
        return error
    index = editor.add()
    return JSONResponse({"index": index, "form": editor.session.render()})


@app.patch("/sessions/{session_id}/issues/{field_name}/{index}")
async def update_issue(session_id: str, field_name: str, index: int, payload: Dict):
    editor, error = _issue_editor(session_id, field_name)
    if error:
        return error
    if not isinstance(payload, dict) or "key" not in payload:
        return JSONResponse({"error": "Missing key"}, status_code=400)
    try:
        record = editor.update(index, payload["key"], payload.get("value"))
    except IssueEditError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except IndexError as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    return JSONResponse({"record": record.model_dump(by_alias=True), "form": editor.session.render()})


@app.delete("/sessions/{session_id}/issues/{field_name}/{index}")
async def remove_issue(session_id: str, field_name: str, index: int):
    editor, error = _issue_editor(session_id, field_name)
    if error:
        return error
    try:
        removed = editor.remove(index)
    except IndexError as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    return JSONResponse({"removed": removed.model_dump(by_alias=True), "form": editor.session.render()})


@app.post("/sessions/{session_id}/issues/{field_name}/{index}/photos")
async def add_issue_photos(session_id: str, field_name: str, index: int, files: List[UploadFile] = File(...)):
    editor, error = _issue_editor(session_id, field_name)
    if error:
        return error
    raws = [await _read_upload(upload) for upload in files]
    try:
        result = await editor.add_photos(index, raws, _services())
    except IndexError as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    return JSONResponse(
        {
            "status": result["status"],
            "assets": [asset.model_dump(by_alias=True) for asset in result["assets"]],
            "errors": result["errors"],
            "form": editor.session.render(),
        }
    )


@app.post("/sessions/{session_id}/validate")
async def validate(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error
    report = validate_session(session)
    return JSONResponse({"report": report.model_dump(), "errors": report.errors_by_field()})


@app.post("/sessions/{session_id}/submit")
async def submit(session_id: str):
    session, error = _get_session(session_id)
    if error:
        return error
    outcome = await submit_session(session, _services())
    return JSONResponse(
        {"outcome": outcome.model_dump(mode="json"), "form": session.render()},
        status_code=SUBMISSION_STATUS_CODES[outcome.status],
    )
