# src/scantron_grader/store.py
from __future__ import annotations

import csv
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from .errors import StoreError
from .models import AssignmentGrades

logger = logging.getLogger(__name__)


class GradeStore(Protocol):
    def load(self, assignment_id: str) -> Optional[AssignmentGrades]:
        """Current state for the assignment, or None if nothing is stored yet."""
        ...

    def save(self, grades: AssignmentGrades) -> None:
        """Replace the stored state as one unit."""
        ...


class MemoryGradeStore:
    """In-process store; hands out copies so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._data: Dict[str, AssignmentGrades] = {}
        self._lock = threading.Lock()

    def load(self, assignment_id: str) -> Optional[AssignmentGrades]:
        with self._lock:
            g = self._data.get(assignment_id)
            return g.model_copy(deep=True) if g is not None else None

    def save(self, grades: AssignmentGrades) -> None:
        with self._lock:
            self._data[grades.assignment_id] = grades.model_copy(deep=True)


class JsonGradeStore:
    """
    One ``<assignment_id>-grades.json`` per assignment under ``root``. Writes
    go to a temp file in the same directory and are moved into place with
    os.replace, so a reader sees either the old file or the new one.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, assignment_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in assignment_id)
        return self.root / f"{safe}-grades.json"

    def load(self, assignment_id: str) -> Optional[AssignmentGrades]:
        p = self.path_for(assignment_id)
        if not p.exists():
            return None
        try:
            return AssignmentGrades.model_validate_json(p.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise StoreError(f"cannot read grades from {p}: {e}") from e

    def save(self, grades: AssignmentGrades) -> None:
        p = self.path_for(grades.assignment_id)
        tmp_name = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=p.name, suffix=".tmp", dir=str(self.root))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(grades.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, p)
            tmp_name = None
        except OSError as e:
            raise StoreError(f"cannot write grades to {p}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        logger.info("Saved %d record(s) for %s to %s", len(grades.records), grades.assignment_id, p)


def export_csv(grades: AssignmentGrades, out_csv: str | Path) -> Path:
    """One row per student: identity, score columns, then the selected answer per question."""
    out = Path(out_csv)
    if out.parent and not out.parent.is_dir():
        out.parent.mkdir(parents=True, exist_ok=True)

    q_numbers = sorted({a.question_number for r in grades.records for a in r.answers})
    header = ["student_id", "version", "page", "score", "total", "percentage", "needs_review"] \
             + [f"Q{n}" for n in q_numbers]

    with out.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for r in grades.records:
            picked = {a.question_number: a.selected or "" for a in r.answers}
            writer.writerow([
                r.student_id,
                r.version_id,
                r.scantron_page_number,
                r.raw_score,
                r.total_questions,
                f"{r.percentage:.1f}",
                "yes" if r.needs_review else "",
            ] + [picked.get(n, "") for n in q_numbers])
    return out
