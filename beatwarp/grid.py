from __future__ import annotations

import math
import uuid
from typing import Dict, List, Sequence

import numpy as np

from .errors import InvalidOptions
from .models import TempoMapping, TransientEvent, WarpMarker

BEATS_PER_BAR = 4  # fixed 4/4


def map_tempo(source_bpm: float, target_bpm: float, duration: float) -> TempoMapping:
    """
    Beat grid at ``target_bpm`` holding as many beats as ``duration`` has at ``source_bpm``.

    Assumes a uniform source tempo: only the beat *count* comes from the
    source, the positions come from the target tempo alone.
    """
    for name, value in (("source_bpm", source_bpm), ("target_bpm", target_bpm), ("duration", duration)):
        if not value > 0:
            raise InvalidOptions(f"{name} must be positive", {name: value})

    source_interval = 60.0 / float(source_bpm)
    target_interval = 60.0 / float(target_bpm)
    num_beats = int(math.floor(duration / source_interval + 1e-9))

    grid = np.arange(num_beats + 1) * target_interval
    beat_grid = grid.tolist()
    return TempoMapping(
        source_bpm=float(source_bpm),
        target_bpm=float(target_bpm),
        beat_grid=beat_grid,
        bar_positions=beat_grid[::BEATS_PER_BAR],
    )


def quantize(
    transients: Sequence[TransientEvent],
    beat_grid: Sequence[float],
    strength: float = 1.0,
) -> List[WarpMarker]:
    """
    Pull beat-annotated transients toward their grid position.

    target = source + strength * (grid - source): 0 leaves the transient where it
    is, 1 puts it exactly on the grid. Transients without a suggested beat (or
    with one outside the grid) are left alone. When several transients claim
    the same beat only the strongest becomes a marker, so the mapping stays
    strictly monotonic.
    """
    if not 0.0 <= strength <= 1.0:
        raise InvalidOptions("strength must be within [0, 1]", {"strength": strength})

    by_beat: Dict[int, TransientEvent] = {}
    for t in transients:
        beat = t.suggested_beat
        if beat is None or not 0 <= beat < len(beat_grid):
            continue
        current = by_beat.get(beat)
        if current is None or t.strength > current.strength:
            by_beat[beat] = t

    markers: List[WarpMarker] = []
    for beat in sorted(by_beat):
        t = by_beat[beat]
        target = (1.0 - strength) * t.time + strength * float(beat_grid[beat])
        if target <= 0.0 < t.time:
            # the implicit (0, 0) anchor already pins the origin
            continue
        markers.append(WarpMarker(
            id=uuid.uuid4().hex,
            source_time=t.time,
            target_time=target,
            transient_strength=min(max(t.strength, 0.0), 1.0),
        ))
    return markers


def merge_with_anchors(existing: Sequence[WarpMarker], proposed: Sequence[WarpMarker]) -> List[WarpMarker]:
    """
    Combine quantized markers with the user's pinned anchors.

    Anchors from ``existing`` are always kept; other existing markers are
    replaced. A proposed marker is dropped when it would break monotonicity
    against the nearest anchor on either side.
    """
    anchors = sorted((m for m in existing if m.is_anchor), key=lambda m: m.source_time)
    kept: List[WarpMarker] = list(anchors)
    for p in proposed:
        before = [a for a in anchors if a.source_time <= p.source_time]
        after = [a for a in anchors if a.source_time >= p.source_time]
        if before and not (p.source_time > before[-1].source_time and p.target_time > before[-1].target_time):
            continue
        if after and not (p.source_time < after[0].source_time and p.target_time < after[0].target_time):
            continue
        kept.append(p)
    return sorted(kept, key=lambda m: m.source_time)
