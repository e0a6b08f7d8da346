from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List

from ..field_registry import behavior_for, check_required
from ..schemas import FieldType, ValidationIssue, ValidationReport
from .issues import IssueListEditor

if TYPE_CHECKING:
    from ..session import FormSession

LOGGER = logging.getLogger(__name__)


def validate_session(session: "FormSession") -> ValidationReport:
    """Required-field check against the current state.

    Fields hidden by a selection group are skipped while hidden; display-only
    fields never take part.
    """
    issues: List[ValidationIssue] = []
    for spec in session.form.fields:
        behavior = behavior_for(spec)
        if behavior.display_only:
            continue
        if session.is_hidden(spec.field_name):
            continue
        value = session.values.get(spec.field_name)
        message = check_required(spec, value, session.required_context(spec.field_name))
        if message:
            issues.append(
                ValidationIssue(field=spec.field_name, severity="error", rule="required", message=message)
            )
            continue
        if behavior.field_type == FieldType.PDI_ISSUES and not spec.required:
            for idx, missing in IssueListEditor(session, spec.field_name).problems().items():
                issues.append(
                    ValidationIssue(
                        field=spec.field_name,
                        severity="warning",
                        rule="issue_incomplete",
                        message=f"Issue #{idx + 1} is missing {' and '.join(missing)}.",
                    )
                )
    ok = not any(issue.severity == "error" for issue in issues)
    if not ok:
        LOGGER.info("Validation blocked %d fields", sum(1 for issue in issues if issue.severity == "error"))
    return ValidationReport(ok=ok, issues=issues)
