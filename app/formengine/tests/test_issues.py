from __future__ import annotations

import anyio
import pytest

from formengine.pipeline.issues import IssueEditError, IssueListEditor, normalize_issue_value
from formengine.services import RawFile


def test_remove_first_keeps_second(pdi_session) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    editor.add()
    editor.update(0, "description", "Stone chip on bonnet")
    editor.update(1, "description", "Kerbed alloy")
    second = pdi_session.values.get("issues")[1]

    editor.remove(0)

    remaining = pdi_session.values.get("issues")
    assert len(remaining) == 1
    assert remaining[0] == second


def test_category_change_resets_subcategory(pdi_session) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    editor.update(0, "category", "bodywork")
    editor.update(0, "subcategory", "Dents")

    record = editor.update(0, "category", "tyres")

    assert record.category == "tyres"
    assert record.subcategory == ""


def test_update_validates_values(pdi_session) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    assert editor.update(0, "estimatedCost", "120.50").estimated_cost == 120.5
    assert editor.update(0, "actionNeeded", "Smart repair").action_needed == "Smart repair"
    with pytest.raises(IssueEditError):
        editor.update(0, "estimatedCost", "lots")
    with pytest.raises(IssueEditError):
        editor.update(0, "status", "lost")
    with pytest.raises(IssueEditError):
        editor.update(0, "colour", "red")
    editor.update(0, "category", "tyres")
    with pytest.raises(IssueEditError):
        editor.update(0, "subcategory", "Dents")
    with pytest.raises(IndexError):
        editor.update(3, "notes", "x")


def test_records_are_stored_with_default_status(pdi_session) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    stored = pdi_session.values.get("issues")[0]
    assert stored["status"] == "outstanding"
    assert stored["photos"] == []
    assert "actionNeeded" in stored


def test_editor_rejects_other_field_types(pdi_session) -> None:
    with pytest.raises(IssueEditError):
        IssueListEditor(pdi_session, "rating")


def test_problems_lists_missing_attributes(pdi_session) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    editor.add()
    editor.update(1, "category", "mechanical")
    editor.update(1, "description", "Oil leak")
    assert editor.problems() == {0: ["category", "description"]}


def test_photos_store_storage_keys_in_order(pdi_session, services_factory, upload_stub, make_image) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    raws = [
        RawFile(filename="front.png", content=make_image(), mime_type="image/png"),
        RawFile(filename="rear.png", content=make_image(), mime_type="image/png"),
    ]

    result = anyio.run(editor.add_photos, 0, raws, services_factory(upload_file=upload_stub))

    assert result["status"] == "uploaded"
    record = pdi_session.values.get("issues")[0]
    assert record["photos"] == ["uploads/1-front.png", "uploads/2-rear.png"]
    assert [a.preview_url for a in editor.photos(0)] == [
        "https://cdn.example.com/uploads/1?sig=abc",
        "https://cdn.example.com/uploads/2?sig=abc",
    ]


def test_partial_photo_upload(pdi_session, services_factory, upload_stub, make_image) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    raws = [
        RawFile(filename="ok.png", content=make_image(), mime_type="image/png"),
        RawFile(filename="notes.txt", content=b"hello", mime_type="text/plain"),
    ]

    result = anyio.run(editor.add_photos, 0, raws, services_factory(upload_file=upload_stub))

    assert result["status"] == "partial"
    assert len(result["errors"]) == 1
    assert pdi_session.values.get("issues")[0]["photos"] == ["uploads/1-ok.png"]


def test_removing_record_drops_its_photos(pdi_session, services_factory, upload_stub, make_image) -> None:
    editor = IssueListEditor(pdi_session, "issues")
    editor.add()
    raws = [RawFile(filename="a.png", content=make_image(), mime_type="image/png")]
    anyio.run(editor.add_photos, 0, raws, services_factory(upload_file=upload_stub))

    editor.remove(0)

    assert pdi_session.assets.all() == []


def test_records_written_without_ids_are_readable(pdi_session) -> None:
    pdi_session.values.set("issues", [{"category": "tyres", "description": "Worn"}, "scratch", {"id": 7}])
    editor = IssueListEditor(pdi_session, "issues")

    records = editor.records()

    assert [record.category for record in records] == ["tyres", ""]
    assert records[0].id
    assert records[1].id == "7"
    assert editor.problems() == {1: ["category", "description"]}


def test_records_with_bad_attributes_keep_their_text(pdi_session) -> None:
    pdi_session.values.set(
        "issues", [{"id": "a1", "category": "bodywork", "description": "Dent", "estimatedCost": "lots", "photos": 3}]
    )
    records = IssueListEditor(pdi_session, "issues").records()
    assert len(records) == 1
    assert (records[0].id, records[0].category, records[0].description) == ("a1", "bodywork", "Dent")
    assert records[0].estimated_cost is None
    assert records[0].photos == []


def test_non_list_issue_value_reads_as_empty(pdi_session) -> None:
    pdi_session.values.set("issues", "scratch")
    assert IssueListEditor(pdi_session, "issues").records() == []


def test_normalize_issue_value_assigns_ids() -> None:
    shaped = normalize_issue_value([{"category": "mot", "description": "Advisory"}, {"id": 5}])
    assert shaped[0]["id"]
    assert shaped[0]["category"] == "mot"
    assert shaped[1]["id"] == "5"
    with pytest.raises(IssueEditError):
        normalize_issue_value(["scratch"])
    with pytest.raises(IssueEditError):
        normalize_issue_value({"category": "mot"})
