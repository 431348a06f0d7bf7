"""
Queue-facing orchestration: commit renders, detection and quantize jobs, plus
the synchronous preview and tempo views of a clip.

``commit()`` validates synchronously and snapshots its inputs before anything
is enqueued; the job handlers do the heavy work inside a private workspace and
only publish an artifact once the whole render has succeeded and been recorded.
Previews are never persisted.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Mapping, Optional, Tuple

from .analyze import detect_transients
from .backend import PcmBackend
from .config import settings
from .errors import InvalidMapping
from .export import export_wav
from .grid import map_tempo, quantize
from .jobs import LocalJobQueue
from .logger import get_logger
from .models import (
    Algorithm,
    PcmBuffer,
    QuantizeSettings,
    Quality,
    RenderResult,
    StretchOptions,
    TransientDetectionResult,
    WarpMarker,
)
from .preview import preview
from .repos import InMemoryRepository, WarpRepository
from .storage import LocalStorage, ObjectStorage
from .warp import expected_duration, plan_segments, stretch, validate_markers
from .workspace import Workspace

logger = get_logger(__name__)

COMMIT_JOB = "audio-warp-commit"
DETECT_JOB = "transient-detection"
QUANTIZE_JOB = "audio-quantize"


@dataclass(frozen=True)
class CommitPayload:
    """Immutable snapshot of everything a commit render needs."""
    clip_id: str
    source_key: str
    markers: Tuple[WarpMarker, ...]
    options: StretchOptions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clip_id": self.clip_id,
            "source_key": self.source_key,
            "markers": [m.to_dict() for m in self.markers],
            "pitch_shift": self.options.pitch_shift,
            "preserve_formants": self.options.preserve_formants,
            "algorithm": self.options.algorithm.value,
            "quality": self.options.quality.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CommitPayload":
        return cls(
            clip_id=data["clip_id"],
            source_key=data["source_key"],
            markers=tuple(WarpMarker.from_dict(m) for m in data["markers"]),
            options=StretchOptions(
                pitch_shift=data.get("pitch_shift") or 0.0,
                preserve_formants=data.get("preserve_formants", True),
                algorithm=data.get("algorithm", Algorithm.PHASE_VOCODER),
                quality=data.get("quality", Quality.HIGH),
            ),
        )


@dataclass(frozen=True)
class CommitTicket:
    job_id: str
    clip_id: str


def _suffix(key: str) -> str:
    return PurePosixPath(key).suffix or ".wav"


class WarpPipeline:
    def __init__(
        self,
        repo: Optional[WarpRepository] = None,
        storage: Optional[ObjectStorage] = None,
        queue: Optional[LocalJobQueue] = None,
        backend: Optional[PcmBackend] = None,
    ):
        self.repo = repo or InMemoryRepository()
        self.storage = storage or LocalStorage()
        self.queue = queue or LocalJobQueue(max_workers=settings.COMMIT_WORKERS)
        self.backend = backend or PcmBackend()
        self.register(self.queue)

    def register(self, queue: LocalJobQueue) -> None:
        queue.register(COMMIT_JOB, self.render_commit)
        queue.register(DETECT_JOB, self.run_detection)
        queue.register(QUANTIZE_JOB, self.run_quantize)

    def _fetch(self, source_key: str, ws: Workspace) -> Path:
        """Download a stored object into the workspace as a libsndfile-readable file."""
        src = ws.file("input", _suffix(source_key))
        src.write_bytes(self.storage.download(source_key))
        return self.backend.ensure_readable(src, ws)

    def _open(self, source_key: str, ws: Workspace) -> Path:
        """Stored object in place, converted into the workspace only if libsndfile cannot read it."""
        path = self.storage.abs_path(source_key)
        if not path.is_file():
            raise FileNotFoundError(f"No object stored under key {source_key!r}")
        return self.backend.ensure_readable(path, ws)

    # ---------- commit ----------

    def commit(
        self,
        clip_id: str,
        algorithm: Algorithm = Algorithm.PHASE_VOCODER,
        quality: Quality = Quality.HIGH,
        pitch_shift: Optional[float] = None,
        preserve_formants: Optional[bool] = None,
    ) -> CommitTicket:
        """
        Validate the clip's markers and enqueue a full-quality render.

        Raises InvalidMapping synchronously; nothing is enqueued in that case.
        Pitch shift and formant preservation default to the clip's settings.
        """
        clip = self.repo.get_clip(clip_id)
        markers = self.repo.list_markers(clip_id)
        if not markers:
            raise InvalidMapping("No warp markers found for clip", {"clip_id": clip_id})
        ordered = validate_markers(markers, clip.duration)

        options = StretchOptions(
            pitch_shift=clip.pitch_shift if pitch_shift is None else pitch_shift,
            preserve_formants=clip.preserve_formants if preserve_formants is None else preserve_formants,
            algorithm=algorithm,
            quality=quality,
        )
        self.backend.require(options.algorithm)

        payload = CommitPayload(clip_id, clip.source_key, tuple(ordered), options)
        job_id = self.queue.enqueue(COMMIT_JOB, payload.to_dict(), priority=1, attempts=settings.COMMIT_ATTEMPTS)
        return CommitTicket(job_id=job_id, clip_id=clip_id)

    def render_commit(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        payload = CommitPayload.from_dict(data)
        with Workspace("commit") as ws:
            src = self._fetch(payload.source_key, ws)

            rendered = stretch(src, payload.markers, payload.options, backend=self.backend, workspace=ws)

            out_path = ws.file("output", ".wav")
            export_wav(out_path, rendered, subtype=settings.OUTPUT_SUBTYPE)
            duration = self.backend.probe(out_path).duration

            # nothing is visible under the final key until the render is complete
            stem = PurePosixPath(payload.source_key).stem
            output_key = f"warped/{payload.clip_id}/{stem}_warped_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.wav"
            self.storage.upload(output_key, out_path.read_bytes())

        try:
            self.repo.record_render(payload.clip_id, output_key, duration)
        except Exception:
            # an unrecorded render is unreachable; do not leave it in storage
            self.storage.delete(output_key)
            raise
        logger.info("Committed warp of clip %s -> %s (%.3fs)", payload.clip_id, output_key, duration)
        return RenderResult(output_key, duration, "wav", payload.markers).to_dict()

    # ---------- preview ----------

    def render_preview(
        self,
        clip_id: str,
        start_time: float,
        end_time: float,
        options: Optional[StretchOptions] = None,
    ) -> PcmBuffer:
        """
        Render a window of the clip with its current markers.

        The source is read in place (only the window's frames) and the result
        stays in memory; nothing is written to storage.
        """
        clip = self.repo.get_clip(clip_id)
        markers = self.repo.list_markers(clip_id)
        with Workspace("preview") as ws:
            src = self._open(clip.source_key, ws)
            return preview(src, markers, start_time, end_time, options, backend=self.backend)

    # ---------- tempo ----------

    def tempo_info(self, clip_id: str) -> Dict[str, Any]:
        """Durations and per-segment ratios implied by the clip's markers."""
        clip = self.repo.get_clip(clip_id)
        markers = validate_markers(self.repo.list_markers(clip_id), clip.duration)
        with Workspace("tempo") as ws:
            meta = self.backend.probe(self._open(clip.source_key, ws))

        warped = expected_duration(markers, meta.duration)
        return {
            "clip_id": clip.id,
            "original_duration": meta.duration,
            "warped_duration": warped,
            "time_stretch": warped / meta.duration,
            "pitch_shift": clip.pitch_shift or 0.0,
            "preserve_formants": clip.preserve_formants,
            "rendered_key": clip.rendered_key,
            "rendered_duration": clip.rendered_duration,
            "marker_count": len(markers),
            "segments": [
                {
                    "source_start": s.source_start,
                    "source_end": s.source_end,
                    "target_start": s.target_start,
                    "target_end": s.target_end,
                    "ratio": s.ratio,
                }
                for s in plan_segments(markers, meta.frames, meta.sample_rate)
            ],
        }

    # ---------- analysis ----------

    def _detect(self, source_key: str, sensitivity: float = 0.5, min_gap: float = 0.05) -> TransientDetectionResult:
        with Workspace("detect") as ws:
            src = self._fetch(source_key, ws)
            return detect_transients(
                src,
                sensitivity=sensitivity,
                min_gap=min_gap,
                estimate_tempo=True,
                backend=self.backend,
            )

    def run_detection(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._detect(
            data["source_key"], data.get("sensitivity", 0.5), data.get("min_gap", 0.05)
        ).to_dict()

    def run_quantize(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Detect, map the tempo onto ``target_bpm`` and quantize.

        Returns the proposed markers; persisting them is up to the caller.
        """
        cfg = QuantizeSettings(
            target_bpm=data["target_bpm"],
            strength=data.get("strength", 1.0),
            sensitivity=data.get("sensitivity", 0.5),
            source_bpm=data.get("source_bpm"),
        )
        detection = self._detect(data["source_key"], cfg.sensitivity)
        return quantize_detection(detection, cfg)


def quantize_detection(detection: TransientDetectionResult, cfg: QuantizeSettings) -> Dict[str, Any]:
    source_bpm = cfg.source_bpm or detection.detected_bpm
    if not source_bpm:
        logger.info("No tempo detected; nothing to quantize")
        return {"markers": [], "tempo": None, "detection": detection.to_dict()}

    mapping = map_tempo(source_bpm, cfg.target_bpm, detection.duration)
    markers = quantize(detection.transients, mapping.beat_grid, cfg.strength)
    return {
        "markers": [m.to_dict() for m in markers],
        "tempo": {
            "source_bpm": mapping.source_bpm,
            "target_bpm": mapping.target_bpm,
            "beat_grid": mapping.beat_grid,
            "bar_positions": mapping.bar_positions,
        },
        "detection": detection.to_dict(),
    }
