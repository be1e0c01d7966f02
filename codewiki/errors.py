"""Error taxonomy for a generation run.

Recoverable problems never leave the pipeline as exceptions; they are turned
into :class:`~codewiki.models.Diagnostic` entries and attached to the final
document.  Only the fatal classes below are raised to the caller.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from .models import Diagnostic


class ErrorKind(str, enum.Enum):
    RECOVERABLE_PER_FILE = "RecoverablePerFile"
    RECOVERABLE_ENRICHMENT = "RecoverableEnrichment"
    RECOVERABLE_ANNOTATION = "RecoverableAnnotation"
    FATAL_CONFIGURATION = "FatalConfiguration"
    FATAL_RESOURCE_EXHAUSTION = "FatalResourceExhaustion"

    @property
    def is_fatal(self) -> bool:
        return self.value.startswith("Fatal")


class CodeWikiError(Exception):
    """Base class for every error raised by codewiki."""


class FatalError(CodeWikiError):
    """A failure that aborts the run.

    Carries whatever diagnostics were gathered before the failure so the
    caller can still report partial progress.
    """

    kind: ErrorKind = ErrorKind.FATAL_CONFIGURATION

    def __init__(self, message: str, diagnostics: Optional[Sequence["Diagnostic"]] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics: List["Diagnostic"] = list(diagnostics or [])


class FatalConfigurationError(FatalError):
    """Invalid setup detected before any work starts."""

    kind = ErrorKind.FATAL_CONFIGURATION


class FatalResourceExhaustionError(FatalError):
    """The run ran out of a hard resource (memory) mid-way."""

    kind = ErrorKind.FATAL_RESOURCE_EXHAUSTION


class ProviderError(CodeWikiError):
    """An enrichment provider failed; always recovered by a templated fallback."""

    def __init__(self, reason: str, status: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status
