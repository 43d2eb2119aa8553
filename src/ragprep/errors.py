"""Exception taxonomy for the ragprep pipeline.

Fatal vs tolerated is decided by the caller, not the exception:

- TransportError: external service unreachable or non-2xx. Fatal to the
  owning phase (layout), degrades the pass (vision).
- RenderUnavailable: rasterization path broken. Degrades Pass 3 and
  diagram cropping only.
- MalformedAsset: an asset cannot be fully interpreted. The asset passes
  through unmerged.
- ExportWriteError: a single artifact failed to write. Counted and skipped.
"""

from typing import Optional


class RagprepError(Exception):
    """Base class for all pipeline errors."""


class UnsupportedInput(RagprepError):
    """Input file type cannot be processed."""


class TransportError(RagprepError):
    """External service could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceTimeout(TransportError):
    """Bounded wait on an external call expired."""


class RenderUnavailable(RagprepError):
    """A page could not be rasterized."""

    def __init__(self, message: str, page_number: Optional[int] = None):
        super().__init__(message)
        self.page_number = page_number


class MalformedAsset(RagprepError):
    """An extracted asset is structurally unusable (e.g. empty table header)."""

    def __init__(self, message: str, asset_id: Optional[str] = None):
        super().__init__(message)
        self.asset_id = asset_id


class ExportWriteError(RagprepError):
    """Writing one export artifact failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class PhaseFailed(RagprepError):
    """A pipeline phase raised an unrecoverable error."""

    def __init__(self, phase: str, message: str):
        super().__init__(f"Phase {phase} failed: {message}")
        self.phase = phase


class JobCancelled(RagprepError):
    """The job was cancelled between phases."""
