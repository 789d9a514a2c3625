# src/scantron_grader/identity.py
"""
Identity payload printed as a QR code on every answer sheet.

Wire format (JSON, short keys to keep the code small):
    {"v": 1, "sid": "S42", "secid": "sec-1", "aid": "asg-7", "uid": "unit-3",
     "ver": "A", "var": "dok2", "qc": 20, "dt": "2024-09-01"}

Decoding is strict: wrong types are rejected, never coerced, and a schema
version other than the expected one is a failure.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

VersionId = Literal["A", "B", "C", "D"]


class Identity(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True, populate_by_name=True, extra="ignore")

    schema_version: int = Field(..., alias="v")
    student_id: str = Field(..., alias="sid", min_length=1)
    assignment_id: str = Field(..., alias="aid", min_length=1)
    section_id: str = Field("", alias="secid")
    unit_id: str = Field("", alias="uid")
    version_id: VersionId = Field("A", alias="ver")
    variant_id: Optional[str] = Field(None, alias="var")
    question_count: int = Field(..., alias="qc", ge=0)

    def to_payload(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), separators=(",", ":"))


@dataclass(frozen=True)
class DecodeOutcome:
    """Either a typed identity or the reason decoding failed."""
    identity: Optional[Identity] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.identity is not None


def parse_identity(text: Optional[str], schema_version: int = 1) -> DecodeOutcome:
    if not text or not text.strip():
        return DecodeOutcome(error="empty payload")
    try:
        identity = Identity.model_validate_json(text.strip())
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        return DecodeOutcome(error=f"invalid payload ({where}: {first.get('msg', 'malformed')})")
    if identity.schema_version != schema_version:
        return DecodeOutcome(
            error=f"schema version {identity.schema_version} != expected {schema_version}"
        )
    return DecodeOutcome(identity=identity)
