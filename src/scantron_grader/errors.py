# src/scantron_grader/errors.py
from __future__ import annotations


class GraderError(Exception):
    """Base class for every error raised by scantron_grader."""


class LayoutError(GraderError, ValueError):
    """Malformed layout template, or a question count the grid cannot hold."""


class PageError(GraderError, ValueError):
    """Zero-sized page image or duplicate page number in one batch."""


class AnswerKeyError(GraderError, ValueError):
    """Answer key is malformed or has duplicate question numbers."""


class ConfigError(GraderError, ValueError):
    """Config file has an unknown section/key or a value of the wrong type."""


class StoreError(GraderError, RuntimeError):
    """Persisting a merged batch failed; the previous state is untouched."""


class LedgerError(GraderError, KeyError):
    """Unidentified page not found in the ledger, or the lookup is ambiguous."""

    def __str__(self) -> str:
        # KeyError repr()s its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class BatchInvariantError(GraderError, RuntimeError):
    """records + unidentified pages did not add up to the pages processed."""


class BatchCancelled(GraderError):
    """The batch was cancelled before commit; the store was not written."""


class RecordNotFoundError(GraderError, KeyError):
    """No stored grade record for the requested student."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
