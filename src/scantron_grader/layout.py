# src/scantron_grader/layout.py
"""
Fixed answer-sheet layout and the pixel geometry derived from it.

All template values are in PDF points (72 per inch) on a US Letter page.
A page rendered at any resolution is mapped back with a single scale
factor, ``image_width / page_width`` (square pixels assumed), and every
derived pixel position is ``round(reference_value * scale)``.

Sheet anatomy (reference units):
  - registration marks: filled square top-right, filled circle bottom-left,
    ``reg_mark_size`` wide, ``reg_mark_offset`` from the page edges
  - name field: printed student name after the "Name:" label
  - code region: the QR code block under the header
  - bubble grid: one row per question, ``choices`` bubbles per row, wrapping
    into a second column after ``questions_per_column`` rows
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from functools import lru_cache
from typing import Dict, List, Tuple

from .errors import LayoutError

Box = Tuple[float, float, float, float]  # x, y, w, h in points


@dataclass(frozen=True)
class LayoutTemplate:
    page_width: float = 612.0
    page_height: float = 792.0
    margin: float = 50.0

    reg_mark_size: float = 20.0
    reg_mark_offset: float = 25.0

    grid_start_y: float = 256.0
    row_height: float = 24.0
    first_bubble_x: float = 92.0      # center of bubble A in the first column
    bubble_spacing: float = 22.0
    bubble_radius: float = 7.0
    sample_size: float = 10.0         # side of the square sampled around each center
    questions_per_column: int = 20
    max_columns: int = 2
    column_width: float = 256.0

    choice_labels: Tuple[str, ...] = ("A", "B", "C", "D")

    name_field: Box = (85.0, 88.0, 220.0, 18.0)
    code_region: Box = (40.0, 136.0, 100.0, 100.0)

    @property
    def choices(self) -> int:
        return len(self.choice_labels)

    @property
    def capacity(self) -> int:
        return self.questions_per_column * self.max_columns

    def validate(self) -> "LayoutTemplate":
        """Raise LayoutError unless every region fits inside the page margins."""
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, (int, float)) and value <= 0:
                raise LayoutError(f"layout.{f.name} must be > 0, got {value}")
        if not self.choice_labels or len(set(self.choice_labels)) != len(self.choice_labels):
            raise LayoutError(f"layout.choice_labels must be unique and non-empty: {self.choice_labels}")
        if self.reg_mark_offset + self.reg_mark_size > min(self.page_width, self.page_height) / 2:
            raise LayoutError("registration marks overlap; reduce reg_mark_offset/reg_mark_size")

        inner_left = self.margin
        inner_right = self.page_width - self.margin
        inner_bottom = self.page_height - self.margin

        grid_bottom = self.grid_start_y + self.questions_per_column * self.row_height
        if grid_bottom > inner_bottom:
            raise LayoutError(
                f"{self.questions_per_column} rows of {self.row_height}pt starting at "
                f"{self.grid_start_y}pt end at {grid_bottom}pt, past the bottom margin {inner_bottom}pt"
            )
        last_x = (
            self.first_bubble_x
            + (self.max_columns - 1) * self.column_width
            + (self.choices - 1) * self.bubble_spacing
        )
        if self.first_bubble_x - self.bubble_radius < inner_left or last_x + self.bubble_radius > inner_right:
            raise LayoutError(f"bubble grid spans past the side margins (last bubble at x={last_x}pt)")
        if self.sample_size > self.bubble_spacing:
            raise LayoutError("layout.sample_size larger than bubble_spacing would sample neighbours")

        for name in ("name_field", "code_region"):
            x, y, w, h = getattr(self, name)
            if x < 0 or y < 0 or w <= 0 or h <= 0 or x + w > self.page_width or y + h > self.page_height:
                raise LayoutError(f"layout.{name} {getattr(self, name)} is outside the page")
        return self


DEFAULT_TEMPLATE = LayoutTemplate()


@dataclass(frozen=True)
class Window:
    """Pixel rectangle; may extend past the image, readers clip it."""
    x: int
    y: int
    w: int
    h: int

    @property
    def x1(self) -> int:
        return self.x + self.w

    @property
    def y1(self) -> int:
        return self.y + self.h


@dataclass(frozen=True)
class ChoiceRegion:
    label: str
    cx: int
    cy: int
    radius: int
    window: Window


@dataclass(frozen=True)
class QuestionGeometry:
    question_number: int          # 1-based
    column: int
    row: int
    choices: Tuple[ChoiceRegion, ...]


# ------------------------------------------------------------------------------
# Scaling
# ------------------------------------------------------------------------------

def scale_for(template: LayoutTemplate, image_width: int) -> float:
    if image_width <= 0:
        raise LayoutError(f"image width must be > 0, got {image_width}")
    return image_width / template.page_width


def to_px(value: float, scale: float) -> int:
    return int(round(value * scale))


def box_to_window(box: Box, scale: float) -> Window:
    x, y, w, h = box
    return Window(to_px(x, scale), to_px(y, scale), max(1, to_px(w, scale)), max(1, to_px(h, scale)))


def square_window(cx: int, cy: int, side: int) -> Window:
    side = max(1, side)
    half = side // 2
    return Window(cx - half, cy - half, side, side)


# ------------------------------------------------------------------------------
# Geometry
# ------------------------------------------------------------------------------

@lru_cache(maxsize=64)
def bubble_geometry(
    template: LayoutTemplate,
    image_width: int,
    image_height: int,
    question_count: int,
) -> Tuple[QuestionGeometry, ...]:
    """
    Pixel centers, radius and sample window of every choice for questions
    1..question_count. Pure; identical inputs give identical geometry.
    """
    if image_height <= 0:
        raise LayoutError(f"image height must be > 0, got {image_height}")
    if question_count < 0 or question_count > template.capacity:
        raise LayoutError(
            f"question count {question_count} does not fit the grid (capacity {template.capacity})"
        )
    scale = scale_for(template, image_width)
    radius = max(1, to_px(template.bubble_radius, scale))
    side = to_px(template.sample_size, scale)

    out: List[QuestionGeometry] = []
    for q in range(question_count):
        column = q // template.questions_per_column
        row = q % template.questions_per_column
        ref_y = template.grid_start_y + row * template.row_height + template.row_height / 2
        cy = to_px(ref_y, scale)
        regions = []
        for c, label in enumerate(template.choice_labels):
            ref_x = template.first_bubble_x + column * template.column_width + c * template.bubble_spacing
            cx = to_px(ref_x, scale)
            regions.append(ChoiceRegion(label, cx, cy, radius, square_window(cx, cy, side)))
        out.append(QuestionGeometry(q + 1, column, row, tuple(regions)))
    return tuple(out)


def corner_windows(template: LayoutTemplate, image_width: int, image_height: int) -> Dict[str, Window]:
    """Square registration-mark windows at all four corners."""
    scale = scale_for(template, image_width)
    size = max(1, to_px(template.reg_mark_size, scale))
    off = to_px(template.reg_mark_offset, scale)
    right = image_width - off - size
    bottom = image_height - off - size
    return {
        "top_left": Window(off, off, size, size),
        "top_right": Window(right, off, size, size),
        "bottom_left": Window(off, bottom, size, size),
        "bottom_right": Window(right, bottom, size, size),
    }


def name_field_window(template: LayoutTemplate, image_width: int) -> Window:
    return box_to_window(template.name_field, scale_for(template, image_width))


def code_region_window(template: LayoutTemplate, image_width: int) -> Window:
    return box_to_window(template.code_region, scale_for(template, image_width))


def template_from_mapping(overrides: Dict[str, object]) -> LayoutTemplate:
    """Build a validated template from a config mapping (unknown keys rejected)."""
    known = {f.name for f in fields(LayoutTemplate)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise LayoutError(f"unknown layout keys: {', '.join(unknown)}")
    values = dict(overrides)
    for key in ("choice_labels", "name_field", "code_region"):
        if key in values:
            values[key] = tuple(values[key])  # YAML gives lists
    try:
        return LayoutTemplate(**values).validate()
    except TypeError as e:
        raise LayoutError(f"bad layout values: {e}") from e
