from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Protocol

from .errors import ClipNotFound
from .models import AudioClip, WarpMarker


class ClipRepository(Protocol):
    def add_clip(self, clip: AudioClip) -> AudioClip: ...

    def get_clip(self, clip_id: str) -> AudioClip: ...

    def record_render(self, clip_id: str, rendered_key: str, duration: float) -> None: ...


class MarkerRepository(Protocol):
    def list_markers(self, clip_id: str) -> List[WarpMarker]: ...

    def replace_markers(self, clip_id: str, markers: Iterable[WarpMarker]) -> List[WarpMarker]: ...

    def upsert_marker(self, clip_id: str, marker: WarpMarker) -> WarpMarker: ...

    def delete_marker(self, clip_id: str, marker_id: str) -> bool: ...


class WarpRepository(ClipRepository, MarkerRepository, Protocol):
    """Everything the pipeline and the HTTP layer persist."""


class InMemoryRepository:
    """Clip + marker persistence for a single process. Reads return copies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._clips: Dict[str, AudioClip] = {}
        self._markers: Dict[str, Dict[str, WarpMarker]] = {}

    def add_clip(self, clip: AudioClip) -> AudioClip:
        with self._lock:
            self._clips[clip.id] = replace(clip)
            self._markers.setdefault(clip.id, {})
        return clip

    def get_clip(self, clip_id: str) -> AudioClip:
        with self._lock:
            clip = self._clips.get(clip_id)
            if clip is None:
                raise ClipNotFound(f"Audio clip {clip_id!r} not found", {"clip_id": clip_id})
            return replace(clip)

    def record_render(self, clip_id: str, rendered_key: str, duration: float) -> None:
        with self._lock:
            clip = self._clips.get(clip_id)
            if clip is None:
                raise ClipNotFound(f"Audio clip {clip_id!r} not found", {"clip_id": clip_id})
            clip.rendered_key = rendered_key
            clip.rendered_duration = duration

    def list_markers(self, clip_id: str) -> List[WarpMarker]:
        """Markers ordered by source time."""
        self.get_clip(clip_id)
        with self._lock:
            return sorted(self._markers[clip_id].values(), key=lambda m: m.source_time)

    def replace_markers(self, clip_id: str, markers: Iterable[WarpMarker]) -> List[WarpMarker]:
        self.get_clip(clip_id)
        with self._lock:
            self._markers[clip_id] = {m.id: m for m in markers}
        return self.list_markers(clip_id)

    def upsert_marker(self, clip_id: str, marker: WarpMarker) -> WarpMarker:
        self.get_clip(clip_id)
        with self._lock:
            self._markers[clip_id][marker.id] = marker
        return marker

    def delete_marker(self, clip_id: str, marker_id: str) -> bool:
        self.get_clip(clip_id)
        with self._lock:
            return self._markers[clip_id].pop(marker_id, None) is not None
