# src/scantron_grader/models.py
"""
Data contracts shared by the grading stages and persisted by the grade store.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class BubbleReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_number: int = Field(..., ge=1)
    selected: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    multiple_marks: bool = False
    fills: Dict[str, float] = Field(default_factory=dict, description="1 - mean intensity per choice")


class AnswerKeyEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_number: int = Field(..., ge=1)
    question_id: str
    correct_answer: str
    points: float = Field(1.0, ge=0.0)


class Student(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    first_name: str = ""
    last_name: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.last_name}, {self.first_name}".strip(", ")


class FlagType(str, Enum):
    MULTIPLE_BUBBLES = "multiple_bubbles"
    NO_ANSWER = "no_answer"
    LOW_CONFIDENCE = "low_confidence"
    KEY_MISMATCH = "key_mismatch"
    STUDENT_NOT_FOUND = "student_not_found"
    QUESTION_COUNT_MISMATCH = "question_count_mismatch"
    OCR_IDENTIFIED = "ocr_identified"
    ORIENTATION_UNCERTAIN = "orientation_uncertain"
    ROTATED_180 = "rotated_180"
    DUPLICATE_STUDENT = "duplicate_student"


class GradeFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FlagType
    question_number: Optional[int] = None
    message: str


class AnswerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_number: int
    question_id: str
    selected: Optional[str]
    correct_answer: str
    confidence: float
    correct: bool
    points: float
    multiple_selected: bool = False
    unclear: bool = False


class GradeRecord(BaseModel):
    student_id: str
    assignment_id: str
    section_id: str = ""
    version_id: str = "A"
    variant_id: Optional[str] = None
    identified_by: Literal["code", "ocr", "manual"] = "code"

    raw_score: int = Field(..., ge=0)
    total_questions: int = Field(..., ge=0)
    percentage: float = Field(..., ge=0.0, le=100.0)
    points: float = 0.0
    max_points: float = 0.0
    confidence: float = 1.0

    answers: List[AnswerResult] = Field(default_factory=list)
    flags: List[GradeFlag] = Field(default_factory=list)
    needs_review: bool = False
    review_notes: Optional[str] = None

    scantron_page_number: int
    source: str = ""
    graded_at: str = Field(default_factory=utc_now)

    @property
    def id(self) -> str:
        return f"{self.assignment_id}-{self.student_id}"


PageType = Literal["unidentified_scantron", "blank_page", "unknown_document"]


class UnidentifiedPage(BaseModel):
    page_number: int
    page_type: PageType
    source: str = ""
    confidence: float = 0.0
    detected_answers: List[BubbleReading] = Field(default_factory=list)
    registration_marks: int = 0
    decode_error: Optional[str] = None
    ocr_student_name: Optional[str] = None
    suggested_students: List[str] = Field(default_factory=list)
    possible_students: List[str] = Field(default_factory=list)


class QuestionStats(BaseModel):
    correct_count: int = 0
    incorrect_count: int = 0
    skipped_count: int = 0
    percent_correct: float = 0.0


class VersionStats(BaseModel):
    count: int = 0
    average: float = 0.0


class GradeStats(BaseModel):
    total_students: int = 0
    average_score: float = 0.0
    median_score: float = 0.0
    high_score: float = 0.0
    low_score: float = 0.0
    standard_deviation: float = 0.0
    by_question: Dict[int, QuestionStats] = Field(default_factory=dict)
    by_version: Dict[str, VersionStats] = Field(default_factory=dict)


class AssignmentGrades(BaseModel):
    """Everything the grade store holds for one assignment."""
    assignment_id: str
    section_id: str = ""
    graded_at: str = Field(default_factory=utc_now)
    records: List[GradeRecord] = Field(default_factory=list)
    stats: GradeStats = Field(default_factory=GradeStats)
    unidentified_pages: List[UnidentifiedPage] = Field(default_factory=list)
