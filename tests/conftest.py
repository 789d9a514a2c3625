from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Sequence

import cv2
import numpy as np
import pytest

from scantron_grader.collaborators import OcrReading
from scantron_grader.identity import Identity
from scantron_grader.images import PageImage
from scantron_grader.layout import DEFAULT_TEMPLATE, LayoutTemplate, bubble_geometry, corner_windows
from scantron_grader.models import GradeRecord

# US Letter at 150 dpi
PAGE_W, PAGE_H = 1275, 1650

# A small grey patch inside the code region; its grey level is the page's tag.
TAG_X, TAG_Y = 100, 300


def render_sheet(
    answers: Sequence[Optional[str]] = (),
    template: LayoutTemplate = DEFAULT_TEMPLATE,
    width: int = PAGE_W,
    height: int = PAGE_H,
    marks: bool = True,
    tag: Optional[int] = None,
    extra_marks: Optional[Dict[int, Sequence[str]]] = None,
) -> np.ndarray:
    """
    White page with the registration marks (filled square top-right, filled
    circle bottom-left), an outlined bubble for every choice, and filled
    bubbles for ``answers`` (question 1 first; None leaves a row blank).
    """
    img = np.full((height, width), 255, dtype=np.uint8)
    if marks:
        wins = corner_windows(template, width, height)
        tr, bl = wins["top_right"], wins["bottom_left"]
        cv2.rectangle(img, (tr.x, tr.y), (tr.x1 - 1, tr.y1 - 1), 0, thickness=-1)
        cv2.circle(img, (bl.x + bl.w // 2, bl.y + bl.h // 2), bl.w // 2, 0, thickness=-1)

    extra_marks = extra_marks or {}
    count = max([len(answers), 1, *extra_marks])
    for q in bubble_geometry(template, width, height, count):
        filled = set()
        if q.question_number <= len(answers) and answers[q.question_number - 1]:
            filled.add(answers[q.question_number - 1])
        filled |= set(extra_marks.get(q.question_number, ()))
        for c in q.choices:
            if c.label in filled:
                cv2.circle(img, (c.cx, c.cy), c.radius, 0, thickness=-1)
            else:
                cv2.circle(img, (c.cx, c.cy), c.radius, 0, thickness=2)

    if tag is not None:
        img[TAG_Y - 3:TAG_Y + 3, TAG_X - 3:TAG_X + 3] = tag
    return img


def make_page(answers=(), page_number=1, source="scan.pdf", rotate=False, **kw) -> PageImage:
    img = render_sheet(answers, **kw)
    if rotate:
        img = np.rot90(img, 2)
    return PageImage(img, page_number, source)


def identity_payload(student_id: str, assignment_id: str = "asg-1", qc: int = 5, **kw) -> str:
    fields = {"v": 1, "sid": student_id, "aid": assignment_id, "secid": "sec-1", "ver": "A", "qc": qc}
    fields.update(kw)
    return Identity.model_validate(fields).to_payload()


class TagDecoder:
    """Decodes the tag patch on an unscaled, upright page into a payload."""

    def __init__(self, payloads: Dict[int, str]) -> None:
        self.payloads = payloads
        self.calls = 0

    def decode(self, pixels: np.ndarray) -> Optional[str]:
        self.calls += 1
        if pixels.shape != (PAGE_H, PAGE_W):
            return None
        return self.payloads.get(int(pixels[TAG_Y, TAG_X]))


class RecordingDecoder:
    """Returns canned results in order and records the shape of each input."""

    def __init__(self, results: Sequence[Optional[str]]) -> None:
        self.results = list(results)
        self.shapes = []

    def decode(self, pixels: np.ndarray) -> Optional[str]:
        self.shapes.append(pixels.shape)
        return self.results.pop(0) if self.results else None


class SlowDecoder:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def decode(self, pixels: np.ndarray) -> Optional[str]:
        time.sleep(self.delay)
        return None


class HangingDecoder(TagDecoder):
    """Like TagDecoder, but never returns on the page carrying ``hang_tag``
    until ``release`` is set."""

    def __init__(self, payloads: Dict[int, str], hang_tag: int) -> None:
        super().__init__(payloads)
        self.hang_tag = hang_tag
        self.release = threading.Event()

    def decode(self, pixels: np.ndarray) -> Optional[str]:
        if pixels.shape == (PAGE_H, PAGE_W) and int(pixels[TAG_Y, TAG_X]) == self.hang_tag:
            self.release.wait(30)
            return None
        return super().decode(pixels)


class BrokenDecoder:
    def decode(self, pixels: np.ndarray) -> Optional[str]:
        raise RuntimeError("decoder crashed")


class FakeOcr:
    def __init__(self, text: str, confidence: float) -> None:
        self.reading = OcrReading(text, confidence)
        self.calls = 0

    def recognize(self, pixels: np.ndarray) -> OcrReading:
        self.calls += 1
        return self.reading


class PassThroughEnhancer:
    def enhance(self, pixels: np.ndarray) -> np.ndarray:
        return pixels


@pytest.fixture
def template() -> LayoutTemplate:
    return DEFAULT_TEMPLATE


def make_record(student_id: str, percentage: float, version_id: str = "A", page: int = 1, answers=None):
    """Minimal GradeRecord with a 10-question score matching ``percentage``."""
    raw = int(round(percentage / 10))
    return GradeRecord(
        student_id=student_id,
        assignment_id="asg-1",
        version_id=version_id,
        raw_score=raw,
        total_questions=10,
        percentage=percentage,
        answers=answers or [],
        scantron_page_number=page,
    )
