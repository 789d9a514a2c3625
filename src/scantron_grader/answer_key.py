# src/scantron_grader/answer_key.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from pydantic import ValidationError

from .config_io import load_config_any
from .errors import AnswerKeyError
from .models import AnswerKeyEntry

logger = logging.getLogger(__name__)


class AnswerKeySource(Protocol):
    def entries_for(self, version_id: str, variant_id: Optional[str] = None) -> Tuple[List[AnswerKeyEntry], bool]:
        """Key entries for a version/variant, and whether that exact key existed."""
        ...

    @property
    def question_count(self) -> int:
        """Highest question number across all keys."""
        ...


def _validated(entries: Iterable[AnswerKeyEntry], label: str) -> List[AnswerKeyEntry]:
    out: List[AnswerKeyEntry] = []
    seen = set()
    for e in entries:
        answer = e.correct_answer.strip().upper()
        if not answer:
            raise AnswerKeyError(f"key {label}: question {e.question_number} has no correct answer")
        if e.question_number in seen:
            raise AnswerKeyError(f"key {label}: duplicate question number {e.question_number}")
        seen.add(e.question_number)
        out.append(e.model_copy(update={"correct_answer": answer}))
    out.sort(key=lambda e: e.question_number)
    return out


class AnswerKey:
    """
    Answer keys per assessment version (A-D), optionally per variant. A
    variant without its own key uses its version's key; a version without a
    key uses the default (first) version.
    """

    def __init__(
        self,
        versions: Mapping[str, Iterable[AnswerKeyEntry]],
        variants: Optional[Mapping[str, Iterable[AnswerKeyEntry]]] = None,
    ) -> None:
        if not versions:
            raise AnswerKeyError("answer key needs at least one version")
        self.versions: Dict[str, List[AnswerKeyEntry]] = {
            str(v).upper(): _validated(e, f"version {v}") for v, e in versions.items()
        }
        self.variants: Dict[str, List[AnswerKeyEntry]] = {
            str(v): _validated(e, f"variant {v}") for v, e in (variants or {}).items()
        }
        self.default_version = next(iter(self.versions))

    @classmethod
    def from_letters(cls, letters: Iterable[str], version_id: str = "A") -> "AnswerKey":
        return cls({version_id: entries_from_letters(letters)})

    def entries_for(self, version_id: str, variant_id: Optional[str] = None) -> Tuple[List[AnswerKeyEntry], bool]:
        if variant_id and variant_id in self.variants:
            return self.variants[variant_id], True
        version = (version_id or self.default_version).upper()
        if version in self.versions:
            return self.versions[version], True
        logger.warning("No key for version %s; using version %s", version, self.default_version)
        return self.versions[self.default_version], False

    @property
    def question_count(self) -> int:
        keys = list(self.versions.values()) + list(self.variants.values())
        return max((e.question_number for entries in keys for e in entries), default=0)


def entries_from_letters(letters: Iterable[str]) -> List[AnswerKeyEntry]:
    return [
        AnswerKeyEntry(question_number=i, question_id=f"q{i}", correct_answer=c.upper(), points=1.0)
        for i, c in enumerate(letters, start=1)
    ]


def load_key_txt(path: str | Path) -> List[str]:
    """Plain-text key: every letter in the file is one answer, in order."""
    raw = Path(path).read_text(encoding="utf-8")
    return [c.upper() for c in raw if c.isalpha()]


def _entries(items: Any, label: str) -> List[AnswerKeyEntry]:
    if not isinstance(items, list):
        raise AnswerKeyError(f"key {label} must be a list")
    if all(isinstance(i, str) for i in items):
        return entries_from_letters(items)
    try:
        return [AnswerKeyEntry.model_validate(i) for i in items]
    except ValidationError as e:
        raise AnswerKeyError(f"key {label}: {e}") from e


def load_answer_key(path: str | Path) -> AnswerKey:
    """
    .txt: letters in order (version A, one point each).
    YAML/JSON: either a list (version A) or
        versions: {A: [...], B: [...]}
        variants: {dok2: [...]}
    where each list holds letters or {question_number, question_id,
    correct_answer, points} mappings.
    """
    p = Path(path)
    if p.suffix.lower() == ".txt":
        return AnswerKey.from_letters(load_key_txt(p))
    data = load_config_any(p, allow_list=True)
    if isinstance(data, list):
        return AnswerKey({"A": _entries(data, "A")})
    versions = data.get("versions")
    if not isinstance(versions, dict) or not versions:
        raise AnswerKeyError(f"{p}: expected a 'versions' mapping")
    variants = data.get("variants") or {}
    return AnswerKey(
        {v: _entries(items, str(v)) for v, items in versions.items()},
        {v: _entries(items, str(v)) for v, items in variants.items()},
    )
