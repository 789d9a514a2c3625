# src/scantron_grader/ledger.py
"""
Pages that could not be tied to a student, kept with their bubble readings
so a person can assign them later and have them graded by the normal rules.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .answer_key import AnswerKeySource
from .errors import LedgerError
from .grading import grade_page
from .identify import GradingContext, ocr_identity
from .models import BubbleReading, GradeRecord, PageType, UnidentifiedPage
from .roster import Roster
from .scoring_defaults import ScoringDefaults

logger = logging.getLogger(__name__)


def classify_page(marks_found: int, readings: Sequence[BubbleReading]) -> PageType:
    """
    unidentified_scantron: a registration mark or any marked bubble
    blank_page:            nothing at all
    unknown_document:      no registration marks but ink in the answer grid
    """
    marked = any(r.selected is not None or r.multiple_marks for r in readings)
    if marks_found > 0 or marked:
        return "unidentified_scantron"
    # Ink that never reaches the fill threshold still counts as "something printed here".
    inked = any(max(r.fills.values(), default=0.0) > 0.25 for r in readings)
    return "unknown_document" if inked else "blank_page"


class UnidentifiedPageLedger:
    def __init__(self, pages: Iterable[UnidentifiedPage] = ()) -> None:
        self._pages: Dict[Tuple[str, int], UnidentifiedPage] = {}
        for p in pages:
            self.add(p)

    def __len__(self) -> int:
        return len(self._pages)

    def add(self, page: UnidentifiedPage) -> None:
        self._pages[(page.source, page.page_number)] = page

    @property
    def pages(self) -> List[UnidentifiedPage]:
        return [self._pages[k] for k in sorted(self._pages)]

    def find(self, page_number: int, source: Optional[str] = None) -> UnidentifiedPage:
        matches = [
            p for (src, num), p in self._pages.items()
            if num == page_number and (source is None or src == source)
        ]
        if not matches:
            raise LedgerError(f"page {page_number} is not pending identification")
        if len(matches) > 1:
            sources = ", ".join(sorted(p.source for p in matches))
            raise LedgerError(f"page {page_number} is pending in several sources ({sources}); pass source")
        return matches[0]

    def resolve(
        self,
        page_number: int,
        student_id: str,
        key: AnswerKeySource,
        context: GradingContext,
        source: Optional[str] = None,
        roster: Optional[Roster] = None,
        scoring: Optional[ScoringDefaults] = None,
    ) -> GradeRecord:
        """Remove the page and grade its stored readings as ``student_id``."""
        if not student_id:
            raise LedgerError("student id is required")
        page = self.find(page_number, source)

        identity = ocr_identity(student_id, context)
        entries, exact = key.entries_for(identity.version_id, identity.variant_id)
        record = grade_page(
            identity,
            page.detected_answers,
            entries,
            page_number=page.page_number,
            identified_by="manual",
            key_exact=exact,
            roster=roster,
            scoring=scoring,
            source=page.source,
        )
        note = f"Manually assigned to {student_id} from unidentified page {page.page_number}"
        if page.ocr_student_name:
            note += f" (OCR read: '{page.ocr_student_name}')"
        record = record.model_copy(update={"review_notes": note})

        del self._pages[(page.source, page.page_number)]
        logger.info("Resolved page %d (%s) as student %s", page.page_number, page.source or "-", student_id)
        return record
