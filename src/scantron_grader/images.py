# src/scantron_grader/images.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

import cv2
import numpy as np

from .errors import PageError
from .layout import Window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageImage:
    """
    Grayscale page (uint8, 0 = black, 255 = white) plus its 1-based page number.

    The buffer is made read-only on construction; corrections such as the
    180° rotation return a new PageImage.
    """
    pixels: np.ndarray
    page_number: int
    source: str = ""

    def __post_init__(self) -> None:
        arr = np.asarray(self.pixels)
        if arr.ndim == 3:
            arr = to_grayscale(arr)
        if arr.ndim != 2:
            raise PageError(f"page {self.page_number}: expected a 2-D grayscale buffer, got shape {arr.shape}")
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        if arr.flags.writeable or not arr.flags.c_contiguous:
            arr = np.array(arr, dtype=np.uint8, order="C", copy=True)
            arr.setflags(write=False)
        object.__setattr__(self, "pixels", arr)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.pixels.size == 0


def to_grayscale(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return img
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)


def rotate_180(page: PageImage) -> PageImage:
    return PageImage(np.rot90(page.pixels, 2), page.page_number, page.source)


def crop(pixels: np.ndarray, win: Window) -> np.ndarray:
    """Crop a window clipped to the image; may return an empty array."""
    h, w = pixels.shape[:2]
    x0, y0 = max(0, win.x), max(0, win.y)
    x1, y1 = min(w, win.x1), min(h, win.y1)
    if x1 <= x0 or y1 <= y0:
        return pixels[0:0, 0:0]
    return pixels[y0:y1, x0:x1]


# ------------------------------------------------------------------------------
# Variants used when hunting for the identity code
# ------------------------------------------------------------------------------

def upscale(pixels: np.ndarray, factor: float = 2.0) -> np.ndarray:
    h, w = pixels.shape[:2]
    return cv2.resize(pixels, (int(round(w * factor)), int(round(h * factor))), interpolation=cv2.INTER_CUBIC)


def normalize_contrast(pixels: np.ndarray) -> np.ndarray:
    return cv2.normalize(pixels, None, 0, 255, cv2.NORM_MINMAX)


def sharpen(pixels: np.ndarray) -> np.ndarray:
    blur = cv2.GaussianBlur(pixels, (0, 0), 1.5)
    return cv2.addWeighted(pixels, 1.5, blur, -0.5, 0)


# ------------------------------------------------------------------------------
# Rasterizer adapter
# ------------------------------------------------------------------------------

def rasterize_pdf(path: str, dpi: int = 150, first_page_number: int = 1) -> List[PageImage]:
    """Render every PDF page to grayscale at ``dpi`` with PyMuPDF."""
    import fitz  # PyMuPDF

    zoom = dpi / 72.0
    mat = fitz.Matrix(zoom, zoom)
    pages: List[PageImage] = []
    name = os.path.basename(path)
    with fitz.open(path) as doc:
        for i, page in enumerate(doc):
            pix = page.get_pixmap(matrix=mat, colorspace=fitz.csGRAY, alpha=False)
            gray = np.frombuffer(pix.samples, dtype=np.uint8).reshape(pix.height, pix.stride)[:, : pix.width]
            pages.append(PageImage(gray, first_page_number + i, name))
    logger.info("Rasterized %d page(s) from %s at %d dpi", len(pages), name, dpi)
    return pages


def load_pages(paths: Iterable[str], dpi: int = 150) -> List[PageImage]:
    """PDFs and raster images, numbered consecutively from 1 across all inputs."""
    pages: List[PageImage] = []
    for p in paths:
        ext = os.path.splitext(p)[1].lower()
        if ext == ".pdf":
            pages.extend(rasterize_pdf(p, dpi=dpi, first_page_number=len(pages) + 1))
        else:
            img: Optional[np.ndarray] = cv2.imread(p, cv2.IMREAD_GRAYSCALE)
            if img is None:
                raise FileNotFoundError(f"Could not read image: {p}")
            pages.append(PageImage(img, len(pages) + 1, os.path.basename(p)))
    return pages
