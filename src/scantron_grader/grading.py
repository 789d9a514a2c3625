# src/scantron_grader/grading.py
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .bubbles import page_confidence
from .identity import Identity
from .models import (
    AnswerKeyEntry,
    AnswerResult,
    BubbleReading,
    FlagType,
    GradeFlag,
    GradeRecord,
)
from .roster import Roster
from .scoring_defaults import DEFAULTS, ScoringDefaults

# Flags that always put a record in front of a human.
REVIEW_FLAGS = {
    FlagType.MULTIPLE_BUBBLES,
    FlagType.LOW_CONFIDENCE,
    FlagType.STUDENT_NOT_FOUND,
    FlagType.QUESTION_COUNT_MISMATCH,
    FlagType.OCR_IDENTIFIED,
    FlagType.DUPLICATE_STUDENT,
    FlagType.ORIENTATION_UNCERTAIN,
}


def percentage_of(raw_score: int, total: int) -> float:
    return (raw_score / total) * 100.0 if total > 0 else 0.0


def _label(value: Optional[str]) -> Optional[str]:
    value = value.strip().upper() if value else ""
    return value or None


def grade_page(
    identity: Identity,
    readings: Sequence[BubbleReading],
    key: Sequence[AnswerKeyEntry],
    page_number: int,
    identified_by: str = "code",
    key_exact: bool = True,
    roster: Optional[Roster] = None,
    extra_flags: Iterable[GradeFlag] = (),
    scoring: Optional[ScoringDefaults] = None,
    source: str = "",
) -> GradeRecord:
    """
    Score one page. Questions present on only one side (readings vs key) are
    left out of the score and flagged ``key_mismatch``.
    """
    scoring = scoring or DEFAULTS
    key_map: Dict[int, AnswerKeyEntry] = {e.question_number: e for e in key}
    reading_map: Dict[int, BubbleReading] = {r.question_number: r for r in readings}
    flags: List[GradeFlag] = list(extra_flags)

    if not key_exact:
        flags.append(GradeFlag(
            type=FlagType.KEY_MISMATCH,
            message=f"No answer key for version {identity.version_id}; graded with the default key",
        ))
    for qn in sorted(set(reading_map) - set(key_map)):
        flags.append(GradeFlag(type=FlagType.KEY_MISMATCH, question_number=qn,
                               message=f"Question {qn} was read but is not in the answer key"))
    for qn in sorted(set(key_map) - set(reading_map)):
        flags.append(GradeFlag(type=FlagType.KEY_MISMATCH, question_number=qn,
                               message=f"Question {qn} is in the answer key but was not read"))

    if identity.question_count and identity.question_count != len(key_map):
        flags.append(GradeFlag(
            type=FlagType.QUESTION_COUNT_MISMATCH,
            message=f"Sheet printed for {identity.question_count} questions, key has {len(key_map)}",
        ))
    if roster is not None and len(roster) and identity.student_id not in roster:
        flags.append(GradeFlag(type=FlagType.STUDENT_NOT_FOUND,
                               message=f"Student ID {identity.student_id} not found in roster"))
    if identified_by == "ocr":
        flags.append(GradeFlag(type=FlagType.OCR_IDENTIFIED,
                               message="Student identified from the printed name, not the code"))

    answers: List[AnswerResult] = []
    raw_score = 0
    points = 0.0
    max_points = 0.0
    graded: List[BubbleReading] = []
    for qn in sorted(set(key_map) & set(reading_map)):
        entry, reading = key_map[qn], reading_map[qn]
        graded.append(reading)
        selected = _label(reading.selected)
        answer = _label(entry.correct_answer)
        correct = selected is not None and selected == answer
        unclear = reading.confidence < scoring.low_confidence
        if correct:
            raw_score += 1
            points += entry.points
        max_points += entry.points

        if reading.multiple_marks:
            flags.append(GradeFlag(type=FlagType.MULTIPLE_BUBBLES, question_number=qn,
                                   message=f"Multiple bubbles filled for question {qn}"))
        elif selected is None:
            flags.append(GradeFlag(type=FlagType.NO_ANSWER, question_number=qn,
                                   message=f"No answer detected for question {qn}"))
        if unclear:
            flags.append(GradeFlag(type=FlagType.LOW_CONFIDENCE, question_number=qn,
                                   message=f"Low confidence ({reading.confidence:.0%}) for question {qn}"))

        answers.append(AnswerResult(
            question_number=qn,
            question_id=entry.question_id,
            selected=selected,
            correct_answer=answer or entry.correct_answer,
            confidence=reading.confidence,
            correct=correct,
            points=entry.points if correct else 0.0,
            multiple_selected=reading.multiple_marks,
            unclear=unclear,
        ))

    total = len(answers)
    confidence = page_confidence(graded)
    needs_review = confidence < scoring.low_confidence or any(f.type in REVIEW_FLAGS for f in flags)

    return GradeRecord(
        student_id=identity.student_id,
        assignment_id=identity.assignment_id,
        section_id=identity.section_id,
        version_id=identity.version_id,
        variant_id=identity.variant_id,
        identified_by=identified_by,
        raw_score=raw_score,
        total_questions=total,
        percentage=percentage_of(raw_score, total),
        points=points,
        max_points=max_points,
        confidence=confidence,
        answers=answers,
        flags=flags,
        needs_review=needs_review,
        scantron_page_number=page_number,
        source=source,
    )


def apply_overrides(
    record: GradeRecord,
    overrides: Mapping[int, Optional[str]],
    key: Sequence[AnswerKeyEntry],
    scoring: Optional[ScoringDefaults] = None,
) -> GradeRecord:
    """
    Replace selected answers by hand (question number -> label or None) and
    re-score. Questions not on the record are ignored. A corrected answer
    counts as certain, so review status is recomputed from what is left.
    """
    scoring = scoring or DEFAULTS
    key_map = {e.question_number: e for e in key}
    applied = 0
    answers: List[AnswerResult] = []
    for a in record.answers:
        if a.question_number not in overrides:
            answers.append(a)
            continue
        applied += 1
        new = overrides[a.question_number]
        selected = _label(new)
        entry = key_map.get(a.question_number)
        correct_answer = _label(entry.correct_answer if entry else a.correct_answer)
        weight = entry.points if entry else (a.points or 1.0)
        correct = selected is not None and selected == correct_answer
        answers.append(a.model_copy(update={
            "selected": selected,
            "correct": correct,
            "points": weight if correct else 0.0,
            "confidence": 1.0,
            "multiple_selected": False,
            "unclear": False,
        }))
    if not applied:
        return record

    touched = {qn for qn in overrides}
    flags = [
        f for f in record.flags
        if f.question_number not in touched
        or f.type not in {FlagType.MULTIPLE_BUBBLES, FlagType.NO_ANSWER, FlagType.LOW_CONFIDENCE}
    ]
    raw_score = sum(1 for a in answers if a.correct)
    confidence = min((a.confidence for a in answers), default=1.0)
    needs_review = confidence < scoring.low_confidence or any(f.type in REVIEW_FLAGS for f in flags)
    note = f"{applied} answer(s) manually corrected"
    return record.model_copy(update={
        "answers": answers,
        "flags": flags,
        "raw_score": raw_score,
        "points": sum(a.points for a in answers),
        "percentage": percentage_of(raw_score, len(answers)),
        "confidence": confidence,
        "needs_review": needs_review,
        "review_notes": f"{record.review_notes}; {note}" if record.review_notes else note,
    })
