from __future__ import annotations

from dataclasses import replace
from typing import Optional, Sequence

from .backend import PcmBackend, Source
from .errors import InvalidOptions
from .logger import get_logger
from .models import PcmBuffer, StretchOptions, WarpMarker
from .warp import map_time, stretch, validate_markers

logger = get_logger(__name__)


def preview(
    source: Source,
    markers: Sequence[WarpMarker],
    start_time: float,
    end_time: float,
    options: Optional[StretchOptions] = None,
    backend: Optional[PcmBackend] = None,
) -> PcmBuffer:
    """
    Render only ``[start_time, end_time)`` of the warped clip.

    Markers inside the window are rebased so the window start is time zero
    on the source axis and its mapped position is time zero on the target
    axis. Only the window's audio is ever read or processed.
    """
    if start_time < 0 or end_time <= start_time:
        raise InvalidOptions(
            "preview window must satisfy 0 <= start_time < end_time",
            {"start_time": start_time, "end_time": end_time},
        )
    backend = backend or PcmBackend()

    ordered = validate_markers(markers)
    meta = backend.probe(source)
    end_time = min(end_time, meta.duration)
    if end_time <= start_time:
        raise InvalidOptions(
            "preview window starts past the end of the audio",
            {"start_time": start_time, "duration": meta.duration},
        )

    target_start = map_time(ordered, start_time)
    rebased = [
        replace(m, source_time=m.source_time - start_time, target_time=m.target_time - target_start)
        for m in ordered
        if start_time <= m.source_time <= end_time
    ]
    rebased = validate_markers(rebased, end_time - start_time)

    window = backend.extract_range(source, start_time, end_time - start_time)
    logger.debug(
        "Preview %.3fs-%.3fs with %d marker(s) (%d frames)",
        start_time, end_time, len(rebased), window.frames,
    )
    return stretch(window, rebased, options, backend=backend)
