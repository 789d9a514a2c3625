import csv
import os

import pytest

from conftest import make_record
from scantron_grader.errors import StoreError
from scantron_grader.models import AssignmentGrades, UnidentifiedPage
from scantron_grader.stats import compute_stats
from scantron_grader.store import JsonGradeStore, MemoryGradeStore, export_csv


def _grades(*records):
    return AssignmentGrades(
        assignment_id="asg-1",
        records=list(records),
        stats=compute_stats(records),
        unidentified_pages=[UnidentifiedPage(page_number=4, page_type="blank_page")],
    )


def test_memory_store_hands_out_copies():
    store = MemoryGradeStore()
    assert store.load("asg-1") is None
    grades = _grades(make_record("S1", 80.0))
    store.save(grades)
    grades.records.clear()
    loaded = store.load("asg-1")
    assert len(loaded.records) == 1
    loaded.records.clear()
    assert len(store.load("asg-1").records) == 1


def test_json_store_round_trip(tmp_path):
    store = JsonGradeStore(tmp_path / "grades")
    assert store.load("asg-1") is None
    store.save(_grades(make_record("S1", 80.0), make_record("S2", 60.0)))

    assert store.path_for("asg-1").name == "asg-1-grades.json"
    loaded = store.load("asg-1")
    assert [r.student_id for r in loaded.records] == ["S1", "S2"]
    assert loaded.stats.average_score == 70.0
    assert loaded.unidentified_pages[0].page_number == 4


def test_failed_write_keeps_previous_state(tmp_path, monkeypatch):
    store = JsonGradeStore(tmp_path)
    store.save(_grades(make_record("S1", 80.0)))

    def boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", boom)
    with pytest.raises(StoreError):
        store.save(_grades(make_record("S1", 10.0)))
    monkeypatch.undo()

    assert store.load("asg-1").records[0].percentage == 80.0
    assert sorted(p.name for p in tmp_path.iterdir()) == ["asg-1-grades.json"]


def test_corrupt_file_is_a_store_error(tmp_path):
    store = JsonGradeStore(tmp_path)
    store.path_for("asg-1").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        store.load("asg-1")


def test_export_csv(tmp_path):
    out = export_csv(_grades(make_record("S1", 80.0)), tmp_path / "out" / "results.csv")
    with out.open(encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0][:4] == ["student_id", "version", "page", "score"]
    assert rows[1][0] == "S1"
    assert rows[1][5] == "80.0"
