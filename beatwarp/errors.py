"""
Error taxonomy for the warp engine.

Every error carries a human readable message plus a ``data`` dict so job
records and HTTP responses can report it without parsing strings.
"""

from typing import Any, Dict, Optional


class WarpError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "data": self.data,
        }


class UnreadableAudio(WarpError):
    """Source container/codec could not be parsed, or holds no audio."""


class BackendUnavailable(WarpError):
    """A required decode/stretch backend is missing from the runtime."""


class InvalidMapping(WarpError):
    """Marker ordering/monotonicity violated, or a non-positive stretch ratio."""


class InvalidOptions(WarpError, ValueError):
    """Operation options rejected at the boundary."""


class ClipNotFound(WarpError, LookupError):
    pass


class RenderFailure(WarpError):
    """Lower level failure while extracting, stretching or splicing a segment."""

    def __init__(
        self,
        message: str,
        segment_index: Optional[int] = None,
        algorithm: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ):
        data = dict(data or {})
        if segment_index is not None:
            data["segment_index"] = segment_index
        if algorithm is not None:
            data["algorithm"] = algorithm
        super().__init__(message, data)
        self.segment_index = segment_index
        self.algorithm = algorithm
