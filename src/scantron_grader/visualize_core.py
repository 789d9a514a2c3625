# src/scantron_grader/visualize_core.py

from __future__ import annotations
from pathlib import Path
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from .images import PageImage
from .layout import (
    LayoutTemplate,
    Window,
    bubble_geometry,
    code_region_window,
    corner_windows,
    name_field_window,
)
from .models import BubbleReading

Color = Tuple[int, int, int]


def _draw_window(img_bgr: np.ndarray, win: Window, color: Color, thickness: int = 2) -> None:
    cv2.rectangle(img_bgr, (win.x, win.y), (win.x1 - 1, win.y1 - 1), color, thickness, lineType=cv2.LINE_AA)


def _label(img_bgr: np.ndarray, text: str, x: int, y: int) -> None:
    # Dark outline under a bright fill so the label reads on any background.
    cv2.putText(img_bgr, text, (x + 4, y + 18), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 0), 3, cv2.LINE_AA)
    cv2.putText(img_bgr, text, (x + 4, y + 18), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 255), 2, cv2.LINE_AA)


def render_overlay(
    page: PageImage,
    template: LayoutTemplate,
    question_count: int,
    readings: Optional[Sequence[BubbleReading]] = None,
    label_blocks: bool = True,
) -> np.ndarray:
    """
    BGR copy of ``page`` with every sampled region drawn on it: bubble
    circles and sample windows, the four registration-mark windows, and the
    name-field and code-region boxes. With ``readings``, the selected bubble
    is filled green and multiple-mark rows are circled red.
    """
    out = cv2.cvtColor(np.ascontiguousarray(page.pixels), cv2.COLOR_GRAY2BGR)
    picked = {r.question_number: r for r in (readings or [])}

    for q in bubble_geometry(template, page.width, page.height, question_count):
        r = picked.get(q.question_number)
        for c in q.choices:
            color: Color = (255, 0, 0)
            if r is not None and r.multiple_marks:
                color = (0, 0, 255)
            elif r is not None and r.selected == c.label:
                color = (0, 200, 0)
            cv2.circle(out, (c.cx, c.cy), c.radius, color, 2, lineType=cv2.LINE_AA)
            _draw_window(out, c.window, (200, 200, 0), thickness=1)

    for name, win in corner_windows(template, page.width, page.height).items():
        _draw_window(out, win, (147, 112, 219))
        if label_blocks:
            _label(out, name, win.x, win.y1)

    name_win = name_field_window(template, page.width)
    code_win = code_region_window(template, page.width)
    _draw_window(out, name_win, (255, 165, 0))
    _draw_window(out, code_win, (0, 165, 255))
    if label_blocks:
        _label(out, "name", name_win.x, name_win.y1)
        _label(out, "code", code_win.x, code_win.y1)
    return out


def overlay_page(
    page: PageImage,
    template: LayoutTemplate,
    question_count: int,
    out_image: str = "layout_overlay.png",
    readings: Optional[Sequence[BubbleReading]] = None,
) -> str:
    """Render the overlay and write it as PNG. Returns the absolute output path."""
    vis = render_overlay(page, template, question_count, readings)
    out_path = Path(out_image).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(out_path), vis):
        raise OSError(f"could not write {out_path}")
    return str(out_path)
