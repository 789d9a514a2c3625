# scantron_grader/scoring_defaults.py
from dataclasses import dataclass, fields, replace


@dataclass(frozen=True)
class ScoringDefaults:
    # Single source of truth for thresholds. Intensities are fractions of 255.
    fill_threshold: float = 0.55        # window mean below this => the bubble looks filled
    ambiguity_gap: float = 0.15         # darkest vs second-darkest gap under this, both filled => multi
    confidence_span: float = 0.40       # gap that maps to confidence 1.0
    low_confidence: float = 0.70        # page confidence under this => needs review
    dark_pixel: float = 0.50            # corner pixel darker than this counts as ink
    mark_present: float = 0.40          # corner dark fraction above this => registration mark present
    orientation_margin: float = 0.05    # BL must beat TR by this much to call the page upside down


@dataclass(frozen=True)
class IdentificationDefaults:
    schema_version: int = 1
    ocr_min_confidence: float = 50.0    # OCR confidence is 0..100
    ocr_min_text_length: int = 3
    timeout_s: float = 10.0             # per decoder/OCR call
    auto_assign_score: float = 80.0     # roster match score needed to grade from OCR alone


DEFAULTS = ScoringDefaults()
ID_DEFAULTS = IdentificationDefaults()


def apply_overrides(
    fill_threshold: float | None = None,
    ambiguity_gap: float | None = None,
    confidence_span: float | None = None,
    low_confidence: float | None = None,
    dark_pixel: float | None = None,
    mark_present: float | None = None,
    orientation_margin: float | None = None,
) -> ScoringDefaults:
    # produce an overridden immutable config without mutating DEFAULTS
    given = {
        "fill_threshold": fill_threshold,
        "ambiguity_gap": ambiguity_gap,
        "confidence_span": confidence_span,
        "low_confidence": low_confidence,
        "dark_pixel": dark_pixel,
        "mark_present": mark_present,
        "orientation_margin": orientation_margin,
    }
    scoring = replace(DEFAULTS, **{k: float(v) for k, v in given.items() if v is not None})
    for f in fields(scoring):
        value = getattr(scoring, f.name)
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"scoring.{f.name} must be within 0..1, got {value}")
    if scoring.confidence_span <= 0.0:
        raise ValueError("scoring.confidence_span must be > 0")
    return scoring
