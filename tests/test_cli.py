import cv2
from typer.testing import CliRunner

from conftest import make_record, render_sheet
from scantron_grader.cli import app
from scantron_grader.models import AssignmentGrades, UnidentifiedPage
from scantron_grader.stats import compute_stats
from scantron_grader.store import JsonGradeStore

runner = CliRunner()


def _seed(store_dir):
    records = [make_record("S1", 80.0), make_record("S2", 60.0)]
    JsonGradeStore(store_dir).save(AssignmentGrades(
        assignment_id="asg-1",
        records=records,
        stats=compute_stats(records),
        unidentified_pages=[UnidentifiedPage(page_number=3, page_type="unidentified_scantron",
                                             suggested_students=["S9"])],
    ))


def test_stats_command(tmp_path):
    _seed(tmp_path)
    result = runner.invoke(app, ["stats", "asg-1", "--store-dir", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "70.0" in result.output
    assert "Unidentified page 3" in result.output


def test_stats_for_unknown_assignment(tmp_path):
    result = runner.invoke(app, ["stats", "nope", "--store-dir", str(tmp_path)])
    assert result.exit_code == 1


def test_override_rejects_bad_set_value(tmp_path):
    key = tmp_path / "key.txt"
    key.write_text("ABC", encoding="utf-8")
    result = runner.invoke(app, ["override", "asg-1", "S1", "--set", "three=B", "-k", str(key),
                                 "--store-dir", str(tmp_path)])
    assert result.exit_code == 2


def test_override_unknown_student_fails(tmp_path):
    _seed(tmp_path)
    key = tmp_path / "key.txt"
    key.write_text("ABC", encoding="utf-8")
    result = runner.invoke(app, ["override", "asg-1", "S404", "--set", "1=B", "-k", str(key),
                                 "--store-dir", str(tmp_path)])
    assert result.exit_code == 2
    assert "Override failed" in result.output


def test_grade_command_files_uncoded_page_in_ledger(tmp_path):
    scan = tmp_path / "scan.png"
    cv2.imwrite(str(scan), render_sheet("ABC"))
    key = tmp_path / "key.txt"
    key.write_text("ABC", encoding="utf-8")
    store_dir = tmp_path / "grades"

    result = runner.invoke(app, ["grade", str(scan), "-a", "asg-1", "-k", str(key), "--no-ocr",
                                 "--store-dir", str(store_dir), "--workers", "1"])
    assert result.exit_code == 0, result.output
    grades = JsonGradeStore(store_dir).load("asg-1")
    assert grades.records == []
    assert [p.page_number for p in grades.unidentified_pages] == [1]
    assert [r.selected for r in grades.unidentified_pages[0].detected_answers] == ["A", "B", "C"]

    result = runner.invoke(app, ["resolve", "asg-1", "1", "S42", "-k", str(key), "--store-dir", str(store_dir)])
    assert result.exit_code == 0, result.output
    assert [r.student_id for r in JsonGradeStore(store_dir).load("asg-1").records] == ["S42"]


def test_resolve_rejects_unknown_version(tmp_path):
    _seed(tmp_path)
    key = tmp_path / "key.txt"
    key.write_text("ABC", encoding="utf-8")
    result = runner.invoke(app, ["resolve", "asg-1", "3", "S9", "-k", str(key), "--version", "e",
                                 "--store-dir", str(tmp_path)])
    assert result.exit_code == 2
    assert "version" in result.output
