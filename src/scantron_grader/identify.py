# src/scantron_grader/identify.py
"""
Per-page identification, strictly ordered:

1. code decode   - whole page, then the code-region crop; each tried as
                   original -> upscaled -> contrast-normalized -> rotated 180
                   until a payload decodes AND validates
2. OCR fallback  - only when no code validated: name field, enhanced, OCR'd;
                   accepted above a minimum confidence and text length
3. unresolved    - neither worked; the caller files the page in the ledger

A decoded identity is authoritative. OCR text is advisory and never
overrides it.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, get_args

import numpy as np

from .collaborators import CodeDecoder, ImageEnhancer, OcrEngine, OcrReading, OpenCvEnhancer
from .errors import ConfigError
from .identity import DecodeOutcome, Identity, VersionId, parse_identity
from .images import PageImage, crop, normalize_contrast, upscale
from .layout import LayoutTemplate, code_region_window, name_field_window
from .scoring_defaults import ID_DEFAULTS, IdentificationDefaults

logger = logging.getLogger(__name__)

T = TypeVar("T")

VARIANTS: Tuple[Tuple[str, Callable[[np.ndarray], np.ndarray]], ...] = (
    ("original", lambda px: px),
    ("upscaled", lambda px: upscale(px, 2.0)),
    ("normalized", normalize_contrast),
    ("rotated", lambda px: np.ascontiguousarray(np.rot90(px, 2))),
)


class _CallTimedOut(Exception):
    """A collaborator call exceeded its timeout."""


@dataclass(frozen=True)
class Resolution:
    identity: Optional[Identity] = None
    decode_error: Optional[str] = None
    ocr_name: Optional[str] = None
    strategy: Optional[str] = None     # e.g. "page/upscaled"


@dataclass(frozen=True)
class GradingContext:
    """What the batch already knows, used to build an identity from OCR alone."""
    assignment_id: str
    section_id: str = ""
    version_id: str = "A"
    question_count: int = 0

    def __post_init__(self) -> None:
        version = (self.version_id or "").strip().upper()
        if version not in get_args(VersionId):
            raise ConfigError(f"version must be one of {', '.join(get_args(VersionId))}, got {self.version_id!r}")
        object.__setattr__(self, "version_id", version)


class IdentificationResolver:
    """
    Holds the decoder/OCR collaborators for one batch run. Every collaborator
    call is bounded by ``settings.timeout_s``; a timeout or an exception is a
    failed attempt, never an error for the batch.
    """

    def __init__(
        self,
        template: LayoutTemplate,
        decoder: Optional[CodeDecoder],
        ocr: Optional[OcrEngine] = None,
        enhancer: Optional[ImageEnhancer] = None,
        settings: IdentificationDefaults = ID_DEFAULTS,
        max_pending_calls: int = 4,
    ) -> None:
        self.template = template
        self.decoder = decoder
        self.ocr = ocr
        self.enhancer = enhancer or OpenCvEnhancer()
        self.settings = settings
        self._max_calls = max_pending_calls
        self._lock = threading.Lock()
        self._pool = self._new_pool()
        self.pools_replaced = 0

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self._max_calls, thread_name_prefix="ident")

    def close(self) -> None:
        # Do not wait on calls that already timed out.
        with self._lock:
            self._pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "IdentificationResolver":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------

    def _call(self, fn: Callable[[np.ndarray], T], pixels: np.ndarray, what: str, page_number: int) -> Optional[T]:
        """
        Run one collaborator call with the timeout. Raises _CallTimedOut so
        the caller can stop trying further variants on the same page.
        """
        with self._lock:
            pool = self._pool
            future = pool.submit(fn, pixels)
        try:
            return future.result(timeout=self.settings.timeout_s)
        except FuturesTimeout:
            if not future.cancel():
                self._abandon(pool)
            logger.warning("Page %d: %s timed out after %.1fs", page_number, what, self.settings.timeout_s)
            raise _CallTimedOut(what) from None
        except Exception as e:  # collaborator failure is a failed attempt
            logger.warning("Page %d: %s failed: %s", page_number, what, e)
        return None

    def _abandon(self, pool: ThreadPoolExecutor) -> None:
        # A running call cannot be cancelled and holds its thread until it
        # returns. Later calls go to a fresh pool; the old one drains what
        # is already queued on it and its threads exit once idle.
        with self._lock:
            if pool is not self._pool:
                return
            self._pool = self._new_pool()
            self.pools_replaced += 1
        pool.shutdown(wait=False, cancel_futures=False)
        logger.warning("Identification call still running after timeout; moved to a fresh thread pool")

    def decode(self, page: PageImage) -> Tuple[DecodeOutcome, Optional[str]]:
        """First validated identity over the fixed source/variant order."""
        if self.decoder is None:
            return DecodeOutcome(error="no code decoder configured"), None

        sources: List[Tuple[str, np.ndarray]] = [("page", page.pixels)]
        region = crop(page.pixels, code_region_window(self.template, page.width))
        if region.size:
            sources.append(("code_region", np.ascontiguousarray(region)))

        last_error = "code not found or unreadable"
        for source_name, pixels in sources:
            for variant_name, make in VARIANTS:
                strategy = f"{source_name}/{variant_name}"
                try:
                    text = self._call(self.decoder.decode, make(pixels), f"decode {strategy}", page.page_number)
                except _CallTimedOut:
                    return DecodeOutcome(error=f"decoder timed out on {strategy}"), None
                if text is None:
                    continue
                outcome = parse_identity(text, self.settings.schema_version)
                if outcome.ok:
                    logger.info("Page %d: code decoded via %s (student %s)",
                                page.page_number, strategy, outcome.identity.student_id)
                    return outcome, strategy
                last_error = outcome.error or last_error
                logger.info("Page %d: rejected payload via %s: %s", page.page_number, strategy, last_error)
        return DecodeOutcome(error=last_error), None

    def read_name(self, page: PageImage) -> Optional[str]:
        """OCR the printed name field; None unless confident and long enough."""
        if self.ocr is None:
            return None
        region = crop(page.pixels, name_field_window(self.template, page.width))
        if region.size == 0:
            return None
        enhanced = self.enhancer.enhance(np.ascontiguousarray(region))
        try:
            reading: Optional[OcrReading] = self._call(self.ocr.recognize, enhanced, "OCR", page.page_number)
        except _CallTimedOut:
            return None
        if reading is None:
            return None
        text = " ".join(reading.text.split())
        if reading.confidence <= self.settings.ocr_min_confidence or len(text) < self.settings.ocr_min_text_length:
            logger.info("Page %d: OCR rejected %r (confidence %.0f)", page.page_number, text, reading.confidence)
            return None
        logger.info("Page %d: OCR read name %r (confidence %.0f)", page.page_number, text, reading.confidence)
        return text

    def resolve(self, page: PageImage) -> Resolution:
        outcome, strategy = self.decode(page)
        if outcome.ok:
            return Resolution(identity=outcome.identity, strategy=strategy)
        return Resolution(decode_error=outcome.error, ocr_name=self.read_name(page))


def ocr_identity(
    student_id: str,
    context: GradingContext,
    settings: IdentificationDefaults = ID_DEFAULTS,
) -> Identity:
    """Identity for a page attributed by name (OCR or manual) instead of by code."""
    return Identity(
        schema_version=settings.schema_version,
        student_id=student_id,
        assignment_id=context.assignment_id,
        section_id=context.section_id,
        version_id=context.version_id,
        question_count=context.question_count,
    )


def pick_auto_assign(candidates: Sequence[Tuple[str, float]], threshold: float) -> Optional[str]:
    """Top candidate when it clears ``threshold`` and is not tied."""
    if not candidates or candidates[0][1] < threshold:
        return None
    if len(candidates) > 1 and candidates[1][1] >= candidates[0][1]:
        return None
    return candidates[0][0]
