from __future__ import annotations

import anyio

from formengine.pipeline.issues import IssueListEditor
from formengine.pipeline.submission import build_payload, submit_session
from formengine.pipeline.validate import validate_session
from formengine.schemas import FormDefinition, SubmissionStatus
from formengine.session import FormSession


def _fill_appraisal(session) -> None:
    session.values.set("reg", "AB12CDE")
    session.values.set("mileage", 0)


def test_validation_reports_missing_required_fields(appraisal_session) -> None:
    report = validate_session(appraisal_session)
    assert not report.ok
    assert set(report.errors_by_field()) == {"reg", "mileage"}


def test_required_boolean_does_not_block(appraisal_session) -> None:
    _fill_appraisal(appraisal_session)
    report = validate_session(appraisal_session)
    assert report.ok
    assert "service_history" not in report.errors_by_field()


def test_hidden_fields_are_waived(drive_session) -> None:
    drive_session.selections["vehicle"].pick(drive_session, {"id": "v1", "vrm": "AB12CDE"})
    errors = validate_session(drive_session).errors_by_field()
    assert "make" not in errors
    assert "model" not in errors
    assert "vrm" not in errors

    drive_session.selections["vehicle"].change_selection(drive_session)
    errors = validate_session(drive_session).errors_by_field()
    assert "make" in errors
    assert "vrm" in errors


def test_optional_issue_list_only_warns(pdi_session) -> None:
    pdi_session.values.set("vrm", "AB12CDE")
    IssueListEditor(pdi_session, "issues").add()
    report = validate_session(pdi_session)
    assert report.ok
    assert [issue.severity for issue in report.issues] == ["warning"]


def test_required_issue_list_blocks_incomplete_records(pdi_form) -> None:
    pdi_form["fields"][2]["required"] = True
    session = FormSession(FormDefinition.model_validate(pdi_form))
    session.values.set("vrm", "AB12CDE")
    assert "issues" in validate_session(session).errors_by_field()

    editor = IssueListEditor(session, "issues")
    editor.add()
    editor.update(0, "category", "bodywork")
    assert "issues" in validate_session(session).errors_by_field()

    editor.update(0, "description", "Scratch on door")
    assert validate_session(session).ok


def test_directly_written_issue_list_validates_and_submits(pdi_session, services_factory) -> None:
    pdi_session.values.set("vrm", "AB12CDE")
    pdi_session.values.set("issues", [{"category": "tyres", "description": "Worn"}, "scratch"])

    report = validate_session(pdi_session)
    assert report.ok
    assert "issues" not in report.errors_by_field()

    services = services_factory(submit_form=lambda payload: ({"id": "s1"}, None))
    outcome = anyio.run(submit_session, pdi_session, services)
    assert outcome.status == SubmissionStatus.SUBMITTED


def test_payload_excludes_display_only_fields(appraisal_session) -> None:
    _fill_appraisal(appraisal_session)
    payload = build_payload(appraisal_session).model_dump(by_alias=True)
    assert payload["formId"] == "form-appraisal"
    assert payload["values"] == {"reg": "AB12CDE", "mileage": 0}
    assert payload["assets"] == []


def test_invalid_form_never_calls_service(appraisal_session, services_factory) -> None:
    calls = []
    services = services_factory(submit_form=lambda payload: calls.append(payload) or ({"id": "s1"}, None))

    outcome = anyio.run(submit_session, appraisal_session, services)

    assert outcome.status == SubmissionStatus.INVALID
    assert calls == []


def test_successful_submit_clears_state(appraisal_session, services_factory) -> None:
    _fill_appraisal(appraisal_session)
    calls = []
    services = services_factory(submit_form=lambda payload: calls.append(payload) or ({"id": "s1"}, None))

    outcome = anyio.run(submit_session, appraisal_session, services)

    assert outcome.status == SubmissionStatus.SUBMITTED
    assert outcome.response == {"id": "s1"}
    assert calls[0]["values"]["reg"] == "AB12CDE"
    assert appraisal_session.submitted
    assert appraisal_session.values.snapshot() == {}

    again = anyio.run(submit_session, appraisal_session, services)
    assert again.status == SubmissionStatus.ALREADY_SUBMITTED
    assert len(calls) == 1


def test_failed_submit_preserves_state(appraisal_session, services_factory) -> None:
    _fill_appraisal(appraisal_session)

    outcome = anyio.run(submit_session, appraisal_session, services_factory())

    assert outcome.status == SubmissionStatus.FAILED
    assert not appraisal_session.submitting
    assert not appraisal_session.submitted
    assert appraisal_session.values.get("reg") == "AB12CDE"


def test_second_submit_while_in_flight_is_refused(appraisal_session, services_factory) -> None:
    _fill_appraisal(appraisal_session)
    calls = []
    services = services_factory(submit_form=lambda payload: calls.append(payload) or ({"id": "s1"}, None))
    outcomes = []

    async def run():
        async def first():
            outcomes.append(await submit_session(appraisal_session, services))

        async with anyio.create_task_group() as tg:
            tg.start_soon(first)
            await anyio.sleep(0)
            outcomes.append(await submit_session(appraisal_session, services))

    anyio.run(run)

    statuses = sorted(outcome.status.value for outcome in outcomes)
    assert statuses == ["in_flight", "submitted"]
    assert len(calls) == 1
