# src/scantron_grader/roster.py
from __future__ import annotations

import csv
import re
from difflib import SequenceMatcher
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config_io import load_config_any
from .models import Student

_NON_ALPHA = re.compile(r"[^a-z]")

MIN_SUGGEST_SCORE = 20.0
MAX_SUGGESTIONS = 3


class Roster:
    def __init__(self, students: Iterable[Student] = ()) -> None:
        self._by_id: Dict[str, Student] = {}
        for s in students:
            self._by_id[s.id] = s

    def __contains__(self, student_id: str) -> bool:
        return student_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, student_id: str) -> Optional[Student]:
        return self._by_id.get(student_id)

    @property
    def ids(self) -> List[str]:
        return list(self._by_id)


def _norm(s: str) -> str:
    return _NON_ALPHA.sub("", s.lower())


def name_match_score(ocr_text: str, student: Student) -> float:
    """
    Heuristic 0..120 score of how well OCR'd name text matches a student:
    last name contained +50, first name contained +30, the OCR text
    contained in the full name +20, plus up to 20 for overall similarity.
    """
    ocr = _norm(ocr_text)
    if not ocr:
        return 0.0
    last, first = _norm(student.last_name), _norm(student.first_name)
    full, reverse = last + first, first + last
    score = 0.0
    if last and last in ocr:
        score += 50
    if first and first in ocr:
        score += 30
    if full and (ocr in full or ocr in reverse):
        score += 20
    if full:
        score += 20 * max(SequenceMatcher(None, ocr, full).ratio(), SequenceMatcher(None, ocr, reverse).ratio())
    return score


def rank_candidates(
    ocr_text: Optional[str],
    roster: Roster,
    available_ids: Sequence[str],
    limit: int = MAX_SUGGESTIONS,
) -> List[Tuple[str, float]]:
    """Best-first (student_id, score) pairs scoring above MIN_SUGGEST_SCORE."""
    if not ocr_text or not available_ids:
        return []
    scored: List[Tuple[str, float]] = []
    for sid in available_ids:
        student = roster.get(sid)
        if student is None:
            continue
        score = name_match_score(ocr_text, student)
        if score > MIN_SUGGEST_SCORE:
            scored.append((sid, round(score, 2)))
    scored.sort(key=lambda t: (-t[1], t[0]))
    return scored[:limit]


def load_roster(path: str | Path) -> Roster:
    """
    CSV with columns id, first_name, last_name, or YAML/JSON either as a
    list of students or as {"students": [...]}.
    """
    p = Path(path)
    if p.suffix.lower() == ".csv":
        with p.open("r", encoding="utf-8", newline="") as f:
            rows = list(csv.DictReader(f))
        return Roster(
            Student(id=r["id"].strip(), first_name=(r.get("first_name") or "").strip(),
                    last_name=(r.get("last_name") or "").strip())
            for r in rows if (r.get("id") or "").strip()
        )
    data = load_config_any(p, allow_list=True)
    items = data.get("students", []) if isinstance(data, dict) else data
    return Roster(Student.model_validate(item) for item in items)
