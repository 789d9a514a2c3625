# src/scantron_grader/orientation.py
"""
180° orientation check from the two filled registration marks.

The printed sheet has a filled square at the top-right corner and a filled
circle at the bottom-left. Sampled in a square window the square reads
~100% dark and the circle ~78% (pi/4 of its bounding box), so on an
upside-down page the bottom-left window is the darker of the two.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from .images import PageImage, crop, rotate_180
from .layout import LayoutTemplate, Window, corner_windows
from .scoring_defaults import DEFAULTS, ScoringDefaults

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrientationResult:
    rotated: bool
    page: PageImage                 # corrected page (the input itself when not rotated)
    darkness: Dict[str, float]      # dark-pixel fraction per corner, 0..1
    marks_found: int                # how many of top_right / bottom_left look marked

    @property
    def uncertain(self) -> bool:
        return self.marks_found == 0


def dark_fraction(pixels: np.ndarray, win: Window, dark_pixel: float) -> float:
    """Fraction of pixels in the window darker than ``dark_pixel`` (0..1 of 255)."""
    region = crop(pixels, win)
    if region.size == 0:
        return 0.0
    return float(np.count_nonzero(region < dark_pixel * 255.0)) / float(region.size)


def detect_orientation(
    page: PageImage,
    template: LayoutTemplate,
    scoring: Optional[ScoringDefaults] = None,
) -> OrientationResult:
    """
    Decide whether ``page`` is upside down. Never raises for odd pages: any
    inconclusive reading keeps the page as-is.
    """
    scoring = scoring or DEFAULTS
    wins = corner_windows(template, page.width, page.height)
    darkness = {name: dark_fraction(page.pixels, win, scoring.dark_pixel) for name, win in wins.items()}

    tr = darkness["top_right"]
    bl = darkness["bottom_left"]
    marks_found = int(tr > scoring.mark_present) + int(bl > scoring.mark_present)

    rotated = marks_found == 2 and bl > tr + scoring.orientation_margin
    if marks_found < 2:
        logger.debug(
            "Page %d: %d registration mark(s) found (TR=%.0f%% BL=%.0f%%), assuming upright",
            page.page_number, marks_found, tr * 100, bl * 100,
        )
    elif rotated:
        logger.info("Page %d: upside down (TR=%.0f%% < BL=%.0f%%), rotating", page.page_number, tr * 100, bl * 100)

    corrected = rotate_180(page) if rotated else page
    return OrientationResult(rotated, corrected, darkness, marks_found)
