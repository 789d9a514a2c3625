# src/scantron_grader/grade_core.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set

from .answer_key import AnswerKeySource
from .bubbles import read_bubbles
from .errors import BatchCancelled, BatchInvariantError, LayoutError, PageError, RecordNotFoundError
from .grading import apply_overrides, grade_page
from .identify import GradingContext, IdentificationResolver, Resolution, ocr_identity, pick_auto_assign
from .identity import Identity
from .images import PageImage
from .layout import DEFAULT_TEMPLATE, LayoutTemplate
from .ledger import UnidentifiedPageLedger, classify_page
from .models import (
    AssignmentGrades,
    BubbleReading,
    FlagType,
    GradeFlag,
    GradeRecord,
    UnidentifiedPage,
    utc_now,
)
from .orientation import OrientationResult, detect_orientation
from .roster import Roster, rank_candidates
from .scoring_defaults import DEFAULTS, ID_DEFAULTS, IdentificationDefaults, ScoringDefaults
from .stats import compute_stats, merge_ledger, merge_records
from .store import GradeStore

logger = logging.getLogger(__name__)

# (stage, current, total); stages: "process", "grade", "commit"
ProgressCallback = Callable[[str, int, int], None]

# Load -> merge -> save is one unit per process.
_COMMIT_LOCK = threading.Lock()


@dataclass(frozen=True)
class PageOutcome:
    """Everything the per-page workers produce; no grading decisions yet."""
    page_number: int
    source: str
    orientation: OrientationResult
    readings: List[BubbleReading]
    resolution: Resolution


@dataclass
class BatchResult:
    total_pages: int
    records: List[GradeRecord] = field(default_factory=list)
    unidentified: List[UnidentifiedPage] = field(default_factory=list)
    grades: Optional[AssignmentGrades] = None   # committed state, when a store was given

    @property
    def identified(self) -> int:
        return len(self.records)

    @property
    def blank(self) -> int:
        return sum(1 for p in self.unidentified if p.page_type == "blank_page")

    @property
    def unknown(self) -> int:
        return sum(1 for p in self.unidentified if p.page_type == "unknown_document")

    @property
    def needs_review(self) -> int:
        return sum(1 for r in self.records if r.needs_review)


def process_page(
    page: PageImage,
    template: LayoutTemplate,
    resolver: IdentificationResolver,
    question_count: int,
    scoring: ScoringDefaults,
) -> PageOutcome:
    """Orientation, then bubbles and identification on the corrected page."""
    orientation = detect_orientation(page, template, scoring)
    upright = orientation.page
    readings = read_bubbles(upright, template, question_count, scoring)
    resolution = resolver.resolve(upright)
    return PageOutcome(page.page_number, page.source, orientation, readings, resolution)


def _validate_pages(pages: Sequence[PageImage]) -> None:
    seen: Set[int] = set()
    for p in pages:
        if p.is_empty or p.width == 0 or p.height == 0:
            raise PageError(f"page {p.page_number} ({p.source or 'in memory'}) has a zero-sized image")
        if p.page_number in seen:
            raise PageError(f"duplicate page number {p.page_number} in batch")
        seen.add(p.page_number)


def _orientation_flags(o: OrientationResult) -> List[GradeFlag]:
    flags = []
    if o.rotated:
        flags.append(GradeFlag(type=FlagType.ROTATED_180, message="Page was upside down and was rotated"))
    if o.uncertain:
        flags.append(GradeFlag(type=FlagType.ORIENTATION_UNCERTAIN,
                               message="No registration marks found; orientation assumed upright"))
    return flags


def _readings_for(readings: List[BubbleReading], identity: Identity, key_len: int) -> List[BubbleReading]:
    limit = max(identity.question_count, key_len)
    return [r for r in readings if r.question_number <= limit]


def _run_pages(
    pages: Sequence[PageImage],
    template: LayoutTemplate,
    resolver: IdentificationResolver,
    question_count: int,
    scoring: ScoringDefaults,
    workers: int,
    cancel: Optional[threading.Event],
    progress: Optional[ProgressCallback],
) -> Dict[int, PageOutcome]:
    total = len(pages)
    outcomes: Dict[int, PageOutcome] = {}

    def work(page: PageImage) -> PageOutcome:
        if cancel is not None and cancel.is_set():
            raise BatchCancelled("batch cancelled")
        return process_page(page, template, resolver, question_count, scoring)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="page") as pool:
        pending: Set[Future] = {pool.submit(work, p) for p in pages}
        try:
            while pending:
                done, pending = wait(pending, timeout=0.5, return_when=FIRST_COMPLETED)
                if cancel is not None and cancel.is_set():
                    raise BatchCancelled("batch cancelled")
                for fut in done:
                    outcome = fut.result()
                    outcomes[outcome.page_number] = outcome
                    if progress:
                        progress("process", len(outcomes), total)
        except BaseException:
            for fut in pending:
                fut.cancel()
            raise
    return outcomes


def grade_batch(
    pages: Sequence[PageImage],
    key: AnswerKeySource,
    context: GradingContext,
    resolver: IdentificationResolver,
    store: Optional[GradeStore] = None,
    roster: Optional[Roster] = None,
    template: LayoutTemplate = DEFAULT_TEMPLATE,
    scoring: Optional[ScoringDefaults] = None,
    settings: IdentificationDefaults = ID_DEFAULTS,
    workers: int = 4,
    question_count: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    progress: Optional[ProgressCallback] = None,
) -> BatchResult:
    """
    Grade a batch of rasterized pages for one assignment.

    Pages are processed concurrently (orientation, bubbles, identification);
    grading, OCR attribution and the ledger are then assembled in page order
    on the calling thread. Every page ends up as exactly one GradeRecord or
    one UnidentifiedPage. With a store, the merged state is written once at
    the end; a cancelled or failed batch writes nothing.
    """
    scoring = scoring or DEFAULTS
    template.validate()
    _validate_pages(pages)
    if workers < 1:
        raise ValueError("workers must be >= 1")

    n_questions = question_count or max(context.question_count, key.question_count)
    if n_questions > template.capacity:
        raise LayoutError(f"{n_questions} questions do not fit the grid (capacity {template.capacity})")

    logger.info("Grading %d page(s) for %s, %d question(s), %d worker(s)",
                len(pages), context.assignment_id, n_questions, workers)

    outcomes = _run_pages(pages, template, resolver, n_questions, scoring, workers, cancel, progress)

    existing = store.load(context.assignment_id) if store is not None else None
    result = _assemble(
        [outcomes[p.page_number] for p in sorted(pages, key=lambda p: p.page_number)],
        key, context, existing, roster, scoring, settings, progress,
    )

    if len(result.records) + len(result.unidentified) != len(pages):
        raise BatchInvariantError(
            f"{len(pages)} page(s) in, {len(result.records)} record(s) + "
            f"{len(result.unidentified)} unidentified out"
        )

    if cancel is not None and cancel.is_set():
        raise BatchCancelled("batch cancelled before commit")
    if store is not None:
        result.grades = commit_batch(store, context, result.records, result.unidentified)
        if progress:
            progress("commit", 1, 1)

    logger.info("Batch done: %d graded, %d unidentified (%d blank, %d unknown), %d need review",
                result.identified, len(result.unidentified), result.blank, result.unknown, result.needs_review)
    return result


def _assemble(
    outcomes: Sequence[PageOutcome],
    key: AnswerKeySource,
    context: GradingContext,
    existing: Optional[AssignmentGrades],
    roster: Optional[Roster],
    scoring: ScoringDefaults,
    settings: IdentificationDefaults,
    progress: Optional[ProgressCallback],
) -> BatchResult:
    result = BatchResult(total_pages=len(outcomes))

    # Students still open for OCR attribution: on the roster, not graded
    # before, and not identified by code anywhere in this batch.
    taken = {r.student_id for r in existing.records} if existing else set()
    taken |= {
        o.resolution.identity.student_id for o in outcomes
        if o.resolution.identity is not None and o.resolution.identity.assignment_id == context.assignment_id
    }
    available = [sid for sid in (roster.ids if roster else []) if sid not in taken]

    for i, o in enumerate(outcomes, start=1):
        identity = o.resolution.identity
        identified_by = "code"
        decode_error = o.resolution.decode_error
        candidates = []

        if identity is not None and identity.assignment_id != context.assignment_id:
            decode_error = f"code is for assignment {identity.assignment_id}, not {context.assignment_id}"
            logger.warning("Page %d: %s", o.page_number, decode_error)
            identity = None

        if identity is None and roster is not None and o.resolution.ocr_name:
            candidates = rank_candidates(o.resolution.ocr_name, roster, available)
            chosen = pick_auto_assign(candidates, settings.auto_assign_score)
            if chosen is not None:
                logger.info("Page %d: OCR name %r assigned to %s", o.page_number, o.resolution.ocr_name, chosen)
                identity = ocr_identity(chosen, context, settings)
                identified_by = "ocr"
                available.remove(chosen)

        if identity is None:
            page_type = classify_page(o.orientation.marks_found, o.readings)
            logger.info("Page %d: unidentified (%s)", o.page_number, page_type)
            suggested = [sid for sid, _ in candidates] if o.resolution.ocr_name else list(available)
            result.unidentified.append(UnidentifiedPage(
                page_number=o.page_number,
                page_type=page_type,
                source=o.source,
                confidence=min((r.confidence for r in o.readings), default=0.0),
                detected_answers=o.readings,
                registration_marks=o.orientation.marks_found,
                decode_error=decode_error,
                ocr_student_name=o.resolution.ocr_name,
                suggested_students=suggested,
                possible_students=list(available),
            ))
        else:
            entries, exact = key.entries_for(identity.version_id, identity.variant_id)
            result.records.append(grade_page(
                identity,
                _readings_for(o.readings, identity, max((e.question_number for e in entries), default=0)),
                entries,
                page_number=o.page_number,
                identified_by=identified_by,
                key_exact=exact,
                roster=roster,
                extra_flags=_orientation_flags(o.orientation),
                scoring=scoring,
                source=o.source,
            ))
        if progress:
            progress("grade", i, len(outcomes))

    result.records = _flag_duplicates(result.records)
    return result


def _flag_duplicates(records: List[GradeRecord]) -> List[GradeRecord]:
    pages_by_student: Dict[str, List[int]] = {}
    for r in records:
        pages_by_student.setdefault(r.student_id, []).append(r.scantron_page_number)

    out = []
    for r in records:
        seen_on = pages_by_student[r.student_id]
        if len(seen_on) > 1:
            flag = GradeFlag(
                type=FlagType.DUPLICATE_STUDENT,
                message=f"Student {r.student_id} appears on pages {', '.join(map(str, seen_on))}",
            )
            r = r.model_copy(update={"flags": r.flags + [flag], "needs_review": True})
        out.append(r)
    return out


def commit_batch(
    store: GradeStore,
    context: GradingContext,
    records: Sequence[GradeRecord],
    unidentified: Sequence[UnidentifiedPage],
) -> AssignmentGrades:
    """Single-writer merge: load, fold records and ledger in, recompute stats, save."""
    with _COMMIT_LOCK:
        current = store.load(context.assignment_id) or AssignmentGrades(
            assignment_id=context.assignment_id, section_id=context.section_id,
        )
        graded_pages = {(r.source, r.scantron_page_number) for r in records}
        still_pending = [p for p in current.unidentified_pages if (p.source, p.page_number) not in graded_pages]

        merged = merge_records(current.records, records)
        grades = current.model_copy(update={
            "graded_at": utc_now(),
            "records": merged,
            "stats": compute_stats(merged),
            "unidentified_pages": merge_ledger(still_pending, unidentified),
        })
        store.save(grades)
    return grades


def resolve_unidentified(
    store: GradeStore,
    assignment_id: str,
    page_number: int,
    student_id: str,
    key: AnswerKeySource,
    version_id: str = "A",
    source: Optional[str] = None,
    roster: Optional[Roster] = None,
    scoring: Optional[ScoringDefaults] = None,
) -> GradeRecord:
    """Assign a pending page to a student, grade it and commit the result."""
    with _COMMIT_LOCK:
        current = store.load(assignment_id) or AssignmentGrades(assignment_id=assignment_id)
        ledger = UnidentifiedPageLedger(current.unidentified_pages)
        context = GradingContext(assignment_id=assignment_id, section_id=current.section_id, version_id=version_id)
        record = ledger.resolve(page_number, student_id, key, context, source=source, roster=roster, scoring=scoring)

        merged = merge_records(current.records, [record])
        store.save(current.model_copy(update={
            "graded_at": utc_now(),
            "records": merged,
            "stats": compute_stats(merged),
            "unidentified_pages": ledger.pages,
        }))
    return record


def override_answers(
    store: GradeStore,
    assignment_id: str,
    student_id: str,
    overrides: Mapping[int, Optional[str]],
    key: AnswerKeySource,
) -> GradeRecord:
    """Apply manual answer corrections to a stored record and commit."""
    with _COMMIT_LOCK:
        current = store.load(assignment_id)
        record = next((r for r in (current.records if current else []) if r.student_id == student_id), None)
        if current is None or record is None:
            raise RecordNotFoundError(f"no grade record for student {student_id} in {assignment_id}")
        entries, _ = key.entries_for(record.version_id, record.variant_id)
        updated = apply_overrides(record, overrides, entries)

        merged = merge_records(current.records, [updated])
        store.save(current.model_copy(update={
            "graded_at": utc_now(),
            "records": merged,
            "stats": compute_stats(merged),
        }))
    logger.info("Overrode %d answer(s) for %s in %s", len(overrides), student_id, assignment_id)
    return updated
