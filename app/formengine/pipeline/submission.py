from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

import anyio

from ..field_registry import is_display_only
from ..schemas import SubmissionOutcome, SubmissionPayload, SubmissionStatus
from .validate import validate_session

if TYPE_CHECKING:
    from ..services import Services
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)

SUBMIT_FAILED_MESSAGE = "Failed to submit form. Please try again."


def build_payload(session: "FormSession") -> SubmissionPayload:
    """Field values (minus display-only types) plus every tracked asset."""
    display_only = {spec.field_name for spec in session.form.fields if is_display_only(spec)}
    values: Dict[str, Any] = {
        name: value for name, value in session.values.snapshot().items() if name not in display_only
    }
    return SubmissionPayload(form_id=session.form.id, values=values, assets=session.assets.all())


async def submit_session(session: "FormSession", services: "Services") -> SubmissionOutcome:
    """Validate and send the payload once; re-entry is refused until the request settles."""
    if session.submitted:
        return SubmissionOutcome(status=SubmissionStatus.ALREADY_SUBMITTED, message="Form already submitted.")
    if session.submitting:
        return SubmissionOutcome(status=SubmissionStatus.IN_FLIGHT, message="Submission already in progress.")
    if session.closed:
        return SubmissionOutcome(status=SubmissionStatus.FAILED, message="Session is closed.")

    report = validate_session(session)
    if not report.ok:
        return SubmissionOutcome(
            status=SubmissionStatus.INVALID,
            message="Please complete the required fields.",
            report=report,
        )

    payload = build_payload(session)
    session.submitting = True
    try:
        data, error = await anyio.to_thread.run_sync(services.submit_form, payload.model_dump(by_alias=True))
    except Exception as exc:  # noqa: BLE001
        data, error = None, str(exc)
    finally:
        session.submitting = False

    if error:
        LOGGER.warning("Submission for form %s failed: %s", session.form.id, error)
        return SubmissionOutcome(status=SubmissionStatus.FAILED, message=SUBMIT_FAILED_MESSAGE, report=report)

    LOGGER.info("Form %s submitted (%d values, %d assets)", session.form.id, len(payload.values), len(payload.assets))
    session.mark_submitted()
    return SubmissionOutcome(
        status=SubmissionStatus.SUBMITTED,
        message="Form submitted successfully!",
        report=report,
        response=data if isinstance(data, dict) else None,
    )
