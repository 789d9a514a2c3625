# src/scantron_grader/bubbles.py
"""
Bubble reader: one reading per question from the mean intensity of a
square window centred on each choice.

Decision rule for one row (intensities are fractions of 255, lower = darker):
  - the darkest choice is the candidate
  - blank   : candidate is not below ``fill_threshold``
  - multi   : the second-darkest is also below ``fill_threshold`` and the
              gap between them is under ``ambiguity_gap`` (no choice is picked)
  - single  : otherwise; confidence grows with the darkest/second gap
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from .images import PageImage
from .layout import LayoutTemplate, QuestionGeometry, Window, bubble_geometry
from .models import BubbleReading
from .scoring_defaults import DEFAULTS, ScoringDefaults


def window_mean(pixels: np.ndarray, win: Window) -> float:
    """
    Mean intensity over the window. Any part of the window outside the image
    counts as white, so off-page samples read as unfilled.
    """
    area = win.w * win.h
    if area <= 0:
        return 255.0
    h, w = pixels.shape[:2]
    x0, y0 = max(0, win.x), max(0, win.y)
    x1, y1 = min(w, win.x1), min(h, win.y1)
    inside = 0
    total = 0.0
    if x1 > x0 and y1 > y0:
        region = pixels[y0:y1, x0:x1]
        inside = region.size
        total = float(region.sum(dtype=np.float64))
    total += 255.0 * (area - inside)
    return total / area


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


def pick_choice(
    means: Sequence[float],
    labels: Sequence[str],
    scoring: ScoringDefaults,
) -> Tuple[Optional[str], float, bool]:
    """
    means: per-choice window mean as a fraction 0..1 (0 = black).
    Returns (selected label or None, confidence 0..1, multiple marks).
    """
    arr = np.asarray(means, dtype=float)
    if arr.size == 0:
        return None, 0.0, False
    order = np.argsort(arr, kind="stable")
    darkest = float(arr[order[0]])
    second = float(arr[order[1]]) if arr.size > 1 else 1.0
    gap = second - darkest

    if darkest >= scoring.fill_threshold:
        # Blank row: as certain as the darkest bubble is far from looking filled.
        return None, _clamp01((darkest - scoring.fill_threshold) * 2.0 / scoring.confidence_span), False

    confidence = _clamp01(gap / scoring.confidence_span)
    if second < scoring.fill_threshold and gap < scoring.ambiguity_gap:
        return None, confidence, True
    return labels[int(order[0])], confidence, False


def read_question(
    pixels: np.ndarray,
    geometry: QuestionGeometry,
    scoring: ScoringDefaults,
) -> BubbleReading:
    labels = [c.label for c in geometry.choices]
    means = [window_mean(pixels, c.window) / 255.0 for c in geometry.choices]
    selected, confidence, multiple = pick_choice(means, labels, scoring)
    return BubbleReading(
        question_number=geometry.question_number,
        selected=selected,
        confidence=round(confidence, 4),
        multiple_marks=multiple,
        fills={label: round(1.0 - m, 4) for label, m in zip(labels, means)},
    )


def read_bubbles(
    page: PageImage,
    template: LayoutTemplate,
    question_count: int,
    scoring: Optional[ScoringDefaults] = None,
) -> List[BubbleReading]:
    """One BubbleReading per question 1..question_count; rows are independent."""
    scoring = scoring or DEFAULTS
    geometry = bubble_geometry(template, page.width, page.height, question_count)
    return [read_question(page.pixels, q, scoring) for q in geometry]


def page_confidence(readings: Sequence[BubbleReading]) -> float:
    """Weakest reading on the page; 1.0 for a page with no questions."""
    return min((r.confidence for r in readings), default=1.0)
