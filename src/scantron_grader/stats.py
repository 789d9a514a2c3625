# src/scantron_grader/stats.py
from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List

import numpy as np

from .models import GradeRecord, GradeStats, QuestionStats, UnidentifiedPage, VersionStats


def merge_records(existing: Iterable[GradeRecord], new: Iterable[GradeRecord]) -> List[GradeRecord]:
    """
    Fold ``new`` into ``existing`` keyed by student id; a new record replaces
    the old one whole. Output is ordered by student id so repeated merges of
    the same batch give identical results.
    """
    by_student: Dict[str, GradeRecord] = {r.student_id: r for r in existing}
    for r in new:
        by_student[r.student_id] = r
    return [by_student[sid] for sid in sorted(by_student)]


def merge_ledger(existing: Iterable[UnidentifiedPage], new: Iterable[UnidentifiedPage]) -> List[UnidentifiedPage]:
    """Pending pages keyed by (source, page number); a re-scanned page replaces its old entry."""
    by_key = {(p.source, p.page_number): p for p in existing}
    for p in new:
        by_key[(p.source, p.page_number)] = p
    return [by_key[k] for k in sorted(by_key)]


def _round(v: float) -> float:
    return round(float(v), 2)


def compute_stats(records: Iterable[GradeRecord]) -> GradeStats:
    """Recompute every aggregate from scratch over the full record set."""
    records = sorted(records, key=lambda r: r.student_id)
    if not records:
        return GradeStats()

    pct = np.array([r.percentage for r in records], dtype=np.float64)

    per_q: Dict[int, List[int]] = defaultdict(lambda: [0, 0, 0])   # correct, incorrect, skipped
    for r in records:
        for a in r.answers:
            counts = per_q[a.question_number]
            if a.selected is None:
                counts[2] += 1
            elif a.correct:
                counts[0] += 1
            else:
                counts[1] += 1

    by_question = {}
    for qn in sorted(per_q):
        correct, incorrect, skipped = per_q[qn]
        answered = correct + incorrect + skipped
        by_question[qn] = QuestionStats(
            correct_count=correct,
            incorrect_count=incorrect,
            skipped_count=skipped,
            percent_correct=_round(correct / answered * 100.0) if answered else 0.0,
        )

    versions: Dict[str, List[float]] = defaultdict(list)
    for r in records:
        versions[r.version_id].append(r.percentage)
    by_version = {
        v: VersionStats(count=len(vals), average=_round(np.mean(vals)))
        for v, vals in sorted(versions.items())
    }

    return GradeStats(
        total_students=len(records),
        average_score=_round(pct.mean()),
        median_score=_round(np.median(pct)),
        high_score=_round(pct.max()),
        low_score=_round(pct.min()),
        standard_deviation=_round(pct.std(ddof=0)),
        by_question=by_question,
        by_version=by_version,
    )
