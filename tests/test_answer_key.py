import pytest

from scantron_grader.answer_key import AnswerKey, load_answer_key
from scantron_grader.errors import AnswerKeyError
from scantron_grader.models import AnswerKeyEntry


def test_plain_text_key(tmp_path):
    p = tmp_path / "key.txt"
    p.write_text("a\nB\nc\nD\n", encoding="utf-8")
    key = load_answer_key(p)
    entries, exact = key.entries_for("A")
    assert exact
    assert [e.correct_answer for e in entries] == ["A", "B", "C", "D"]
    assert [e.question_number for e in entries] == [1, 2, 3, 4]
    assert key.question_count == 4


def test_versions_and_variants(tmp_path):
    p = tmp_path / "key.yaml"
    p.write_text(
        "versions:\n"
        "  A: [A, B, C]\n"
        "  B:\n"
        "    - {question_number: 1, question_id: b1, correct_answer: d, points: 2}\n"
        "variants:\n"
        "  dok2: [C, C, C, C]\n",
        encoding="utf-8",
    )
    key = load_answer_key(p)
    b, _ = key.entries_for("B")
    assert b[0].correct_answer == "D"
    assert b[0].points == 2
    dok2, exact = key.entries_for("B", "dok2")
    assert exact and len(dok2) == 4
    assert key.question_count == 4
    # unknown variant falls back to its version
    assert key.entries_for("B", "dok9") == (b, True)


def test_missing_version_uses_default_key():
    key = AnswerKey.from_letters("AB")
    entries, exact = key.entries_for("C")
    assert not exact
    assert [e.correct_answer for e in entries] == ["A", "B"]


def test_duplicate_question_numbers_are_rejected():
    dup = [
        AnswerKeyEntry(question_number=1, question_id="q1", correct_answer="A"),
        AnswerKeyEntry(question_number=1, question_id="q1b", correct_answer="B"),
    ]
    with pytest.raises(AnswerKeyError, match="duplicate"):
        AnswerKey({"A": dup})


def test_malformed_key_files(tmp_path):
    p = tmp_path / "key.json"
    p.write_text('{"answers": ["A"]}', encoding="utf-8")
    with pytest.raises(AnswerKeyError):
        load_answer_key(p)
    p.write_text('{"versions": {"A": [{"question_number": "x"}]}}', encoding="utf-8")
    with pytest.raises(AnswerKeyError):
        load_answer_key(p)
