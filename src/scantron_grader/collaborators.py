# src/scantron_grader/collaborators.py
"""
Narrow contracts for the external primitives (code decoding, OCR, image
enhancement) plus default adapters over OpenCV and Tesseract.

Adapters are constructed once per batch run and handed to the resolver.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

from .images import normalize_contrast, sharpen, upscale

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OcrReading:
    text: str
    confidence: float  # 0..100


class CodeDecoder(Protocol):
    def decode(self, pixels: np.ndarray) -> Optional[str]:
        """Return the decoded text payload, or None when nothing was found."""
        ...


class OcrEngine(Protocol):
    def recognize(self, pixels: np.ndarray) -> OcrReading:
        ...


class ImageEnhancer(Protocol):
    def enhance(self, pixels: np.ndarray) -> np.ndarray:
        ...


# ------------------------------------------------------------------------------
# Default adapters
# ------------------------------------------------------------------------------

class OpenCvQrDecoder:
    """QR decoding through cv2.QRCodeDetector."""

    def __init__(self) -> None:
        self._detector = cv2.QRCodeDetector()

    def decode(self, pixels: np.ndarray) -> Optional[str]:
        text, points, _ = self._detector.detectAndDecode(pixels)
        if points is None or not text:
            return None
        return text


class TesseractOcr:
    """
    OCR through pytesseract. Confidence is the mean of the word confidences
    Tesseract reports (entries of -1 are layout rows, not words).
    """

    def __init__(self, lang: str = "eng", psm: int = 7) -> None:
        self.lang = lang
        self.config = f"--psm {psm}"

    def recognize(self, pixels: np.ndarray) -> OcrReading:
        import pytesseract
        from PIL import Image

        data = pytesseract.image_to_data(
            Image.fromarray(pixels), lang=self.lang, config=self.config,
            output_type=pytesseract.Output.DICT,
        )
        words = []
        confs = []
        for word, conf in zip(data.get("text", []), data.get("conf", [])):
            conf = float(conf)
            if conf < 0 or not str(word).strip():
                continue
            words.append(str(word).strip())
            confs.append(conf)
        text = " ".join(words)
        confidence = sum(confs) / len(confs) if confs else 0.0
        return OcrReading(text=text, confidence=confidence)


class OpenCvEnhancer:
    """Upscale 2x, stretch contrast, sharpen: the name-field prep before OCR."""

    def __init__(self, factor: float = 2.0) -> None:
        self.factor = factor

    def enhance(self, pixels: np.ndarray) -> np.ndarray:
        if pixels.size == 0:
            return pixels
        return sharpen(normalize_contrast(upscale(pixels, self.factor)))
