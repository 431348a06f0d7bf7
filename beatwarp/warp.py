from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .backend import PcmBackend, Source
from .errors import BackendUnavailable, InvalidMapping, RenderFailure, UnreadableAudio
from .algorithms import fit_length
from .logger import get_logger
from .models import PcmBuffer, StretchOptions, WarpMarker
from .workspace import Workspace

logger = get_logger(__name__)

# |ratio - 1| at or below this counts as "no time change" (segment copied verbatim)
RATIO_TOLERANCE = 1e-4

# markers may sit this far past the last sample (window/frame rounding)
DURATION_TOLERANCE = 1e-3


@dataclass(frozen=True)
class Segment:
    """
    One piece of the piecewise mapping, in source order.
    Frame positions are absolute within the source / output.
    """
    index: int
    source_start: float
    source_end: float
    target_start: float
    target_end: float
    start_frame: int
    stop_frame: int
    target_frames: int
    is_tail: bool = False

    @property
    def source_frames(self) -> int:
        return self.stop_frame - self.start_frame

    @property
    def ratio(self) -> float:
        return (self.target_end - self.target_start) / (self.source_end - self.source_start)

    def needs_processing(self, pitch_shift: float) -> bool:
        return abs(self.ratio - 1.0) > RATIO_TOLERANCE or bool(pitch_shift)


def validate_markers(markers: Sequence[WarpMarker], duration: Optional[float] = None) -> List[WarpMarker]:
    """
    Sort markers by source time and check the mapping is monotonic.

    Equal source times are allowed (they form a zero-length segment that is
    skipped). Raises InvalidMapping on duplicate ids, negative or non-finite
    times, decreasing target times, a zero stretch ratio, or a source time past
    ``duration``.
    """
    seen = set()
    for m in markers:
        if m.id in seen:
            raise InvalidMapping(f"Duplicate marker id {m.id!r}", {"marker_id": m.id})
        seen.add(m.id)
        for name, value in (("source_time", m.source_time), ("target_time", m.target_time)):
            if not math.isfinite(value) or value < 0:
                raise InvalidMapping(
                    f"Marker {m.id!r} has invalid {name} {value}", {"marker_id": m.id, name: value}
                )

    ordered = sorted(markers, key=lambda m: m.source_time)

    prev_s, prev_t = 0.0, 0.0
    for m in ordered:
        if m.target_time < prev_t:
            raise InvalidMapping(
                f"Marker {m.id!r} maps to {m.target_time:.6f}s, before the previous target {prev_t:.6f}s",
                {"marker_id": m.id, "target_time": m.target_time, "previous_target_time": prev_t},
            )
        if m.source_time > prev_s and m.target_time == prev_t:
            raise InvalidMapping(
                f"Marker {m.id!r} gives a zero stretch ratio",
                {"marker_id": m.id, "source_time": m.source_time, "target_time": m.target_time},
            )
        prev_s, prev_t = m.source_time, m.target_time

    if duration is not None and ordered and ordered[-1].source_time > duration + DURATION_TOLERANCE:
        last = ordered[-1]
        raise InvalidMapping(
            f"Marker {last.id!r} at {last.source_time:.6f}s is past the end of the audio ({duration:.6f}s)",
            {"marker_id": last.id, "source_time": last.source_time, "duration": duration},
        )
    return ordered


def plan_segments(markers: Sequence[WarpMarker], total_frames: int, sample_rate: int) -> List[Segment]:
    """
    Split the source into segments between consecutive anchors.

    An implicit anchor sits at (0, 0). After the last marker the tail runs to
    the end of the source at ratio 1. ``markers`` must already be validated.
    """
    sr = float(sample_rate)
    duration = total_frames / sr

    def src_frame(t: float) -> int:
        return min(total_frames, int(round(t * sr)))

    anchors = [(0.0, 0.0)] + [(m.source_time, m.target_time) for m in markers]
    segments: List[Segment] = []

    for (s0, t0), (s1, t1) in zip(anchors, anchors[1:]):
        a, b = src_frame(s0), src_frame(s1)
        if b <= a:
            logger.debug("Skipping zero-length segment at %.6fs", s0)
            continue
        segments.append(Segment(
            index=len(segments),
            source_start=s0, source_end=s1,
            target_start=t0, target_end=t1,
            start_frame=a, stop_frame=b,
            target_frames=int(round(t1 * sr)) - int(round(t0 * sr)),
        ))

    s_last, t_last = anchors[-1]
    a = src_frame(s_last)
    if total_frames > a:
        remaining = duration - s_last
        segments.append(Segment(
            index=len(segments),
            source_start=s_last, source_end=duration,
            target_start=t_last, target_end=t_last + remaining,
            start_frame=a, stop_frame=total_frames,
            target_frames=total_frames - a,
            is_tail=True,
        ))
    return segments


def expected_duration(markers: Sequence[WarpMarker], source_duration: float) -> float:
    """Output duration implied by a (validated) marker list."""
    if not markers:
        return source_duration
    last = max(markers, key=lambda m: m.source_time)
    return last.target_time + (source_duration - last.source_time)


def map_time(markers: Sequence[WarpMarker], source_time: float) -> float:
    """Target position of ``source_time`` under a (validated, ordered) marker list."""
    prev_s, prev_t = 0.0, 0.0
    for m in markers:
        if m.source_time > source_time:
            ratio = (m.target_time - prev_t) / (m.source_time - prev_s)
            return prev_t + (source_time - prev_s) * ratio
        prev_s, prev_t = m.source_time, m.target_time
    # tail after the last marker plays at ratio 1
    return prev_t + (source_time - prev_s)


def _normalize_peak(y2d: np.ndarray, headroom_db: Optional[float]) -> np.ndarray:
    """
    Simple peak normalization to -headroom dBFS.
    This is NOT a true-peak limiter, but helps avoid clipping after pitch shifting.
    """
    if headroom_db is None:
        return y2d

    peak = float(np.max(np.abs(y2d))) if y2d.size else 0.0
    if peak <= 0.0:
        return y2d

    target = 10 ** (-float(headroom_db) / 20.0)  # e.g. -1 dB => 0.891
    if peak > target:
        y2d = y2d * (target / peak)
    return y2d


def _render_segment(
    seg: Segment,
    source: Source,
    backend: PcmBackend,
    options: StretchOptions,
    workspace: Optional[Workspace],
) -> PcmBuffer:
    try:
        piece = backend.extract_frames(source, seg.start_frame, seg.stop_frame)
        if not seg.needs_processing(options.pitch_shift):
            if piece.frames == seg.target_frames:
                return piece
            return PcmBuffer(fit_length(piece.samples, seg.target_frames), piece.sample_rate)

        ratio = 1.0 if seg.is_tail else seg.ratio
        return backend.apply_time_stretch(
            piece,
            ratio,
            pitch_shift=options.pitch_shift,
            preserve_formants=options.preserve_formants,
            algorithm=options.algorithm,
            quality=options.quality,
            target_frames=seg.target_frames,
            workspace=workspace,
        )
    except (BackendUnavailable, UnreadableAudio):
        raise
    except RenderFailure as e:
        if e.segment_index is None:
            raise RenderFailure(e.message, seg.index, options.algorithm.value, e.data) from e
        raise
    except Exception as e:
        raise RenderFailure(
            f"Segment {seg.index} ({seg.source_start:.3f}s-{seg.source_end:.3f}s) failed: {e}",
            seg.index,
            options.algorithm.value,
        ) from e


def stretch(
    source: Source,
    markers: Sequence[WarpMarker],
    options: Optional[StretchOptions] = None,
    backend: Optional[PcmBackend] = None,
    workspace: Optional[Workspace] = None,
) -> PcmBuffer:
    """
    Warp audio so every marker's source time lands on its target time.

    - Pitch is transposed independently of the time change
    - Segments with no time change and no pitch shift are copied verbatim
    - Segments are spliced back in source order with no gaps or overlaps

    Parameters
    ----------
    source : path or PcmBuffer
        Audio to warp.
    markers : Sequence[WarpMarker]
        Anchors, in any order. Validated before any audio is read.
    options : StretchOptions
        Algorithm/quality/pitch settings.
    backend : PcmBackend
        Decode/stretch backend (a default one is created when omitted).
    workspace : Workspace
        Temp namespace for file-based algorithms. When omitted the invocation
        opens (and removes) its own.

    Returns
    -------
    PcmBuffer
        Rendered audio, ``round(lastTarget*sr) + (frames - round(lastSource*sr))`` frames long.
    """
    if options is None:
        options = StretchOptions()
    if backend is None:
        backend = PcmBackend()

    ordered = validate_markers(markers)
    backend.require(options.algorithm)

    meta = backend.probe(source)
    validate_markers(ordered, meta.duration)

    if not ordered and not options.pitch_shift:
        logger.info("No warp markers; copying source verbatim")
        return backend.extract_frames(source, 0, meta.frames)

    segments = plan_segments(ordered, meta.frames, meta.sample_rate)
    logger.debug(
        "Rendering %d segment(s) with %s/%s, pitch %+.2f st",
        len(segments), options.algorithm.value, options.quality.value, options.pitch_shift,
    )

    scope = Workspace("stretch") if workspace is None else nullcontext(workspace)
    with scope as ws:
        if options.workers > 1 and len(segments) > 1:
            with ThreadPoolExecutor(max_workers=options.workers) as pool:
                # map() yields in submission order, which is source order
                rendered = list(pool.map(
                    lambda seg: _render_segment(seg, source, backend, options, ws), segments
                ))
        else:
            rendered = [_render_segment(seg, source, backend, options, ws) for seg in segments]

    rendered = [r for r in rendered if r.frames > 0]
    if not rendered:
        return PcmBuffer(np.zeros((0, meta.channels), dtype=np.float32), meta.sample_rate)

    out = backend.concatenate(rendered)
    if options.headroom_db is not None:
        out = PcmBuffer(_normalize_peak(out.samples, options.headroom_db), out.sample_rate)
    return out
