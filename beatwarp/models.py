from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .errors import InvalidOptions

MAX_PITCH_SHIFT = 24.0  # semitones
MIN_BPM, MAX_BPM = 20.0, 300.0


class Algorithm(str, Enum):
    HIGH_QUALITY = "high-quality"     # Rubber Band, formant aware
    PHASE_VOCODER = "phase-vocoder"   # librosa STFT phase vocoder
    OVERLAP_ADD = "overlap-add"       # time-domain WSOLA, chained within 0.5x..2x


class Quality(str, Enum):
    FAST = "fast"
    NORMAL = "normal"
    HIGH = "high"


def _enum_value(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidOptions(f"{name} must be one of: {allowed}", {name: value})


@dataclass(frozen=True)
class WarpMarker:
    id: str
    source_time: float           # seconds in the original signal
    target_time: float           # seconds in the output signal
    is_anchor: bool = False      # pinned by the user, never auto-removed
    transient_strength: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_time": self.source_time,
            "target_time": self.target_time,
            "is_anchor": self.is_anchor,
            "transient_strength": self.transient_strength,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WarpMarker":
        return cls(
            id=str(data["id"]),
            source_time=float(data["source_time"]),
            target_time=float(data["target_time"]),
            is_anchor=bool(data.get("is_anchor", False)),
            transient_strength=data.get("transient_strength"),
        )


@dataclass
class TransientEvent:
    time: float
    strength: float
    suggested_beat: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"time": self.time, "strength": self.strength, "suggested_beat": self.suggested_beat}


@dataclass
class TransientDetectionResult:
    transients: List[TransientEvent]
    duration: float
    detected_bpm: Optional[float] = None
    degraded: bool = False       # True when a synthetic envelope stood in for the signal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transients": [t.to_dict() for t in self.transients],
            "duration": self.duration,
            "detected_bpm": self.detected_bpm,
            "degraded": self.degraded,
        }


@dataclass
class TempoMapping:
    source_bpm: float
    target_bpm: float
    beat_grid: List[float]       # target-time positions, 60/target_bpm apart
    bar_positions: List[float]   # every 4th beat (fixed 4/4)


@dataclass(frozen=True)
class AudioMetadata:
    duration: float
    sample_rate: int
    channels: int
    frames: int
    format: str = "unknown"


@dataclass
class AudioClip:
    """Clip record owned by the persistence collaborator."""
    id: str
    source_key: str
    duration: float
    pitch_shift: Optional[float] = None
    preserve_formants: bool = True
    rendered_key: Optional[str] = None      # write-once, set by a completed commit
    rendered_duration: Optional[float] = None


def as_2d(y: np.ndarray) -> np.ndarray:
    """
    Ensure audio is shape (n_samples, n_channels).
    Accepts mono (n,) or (n, ch).
    """
    if y.ndim == 1:
        return y[:, None]
    if y.ndim == 2:
        return y
    raise ValueError("Audio array must be 1D (mono) or 2D (n_samples, n_channels).")


@dataclass
class PcmBuffer:
    """Decoded PCM, always stored as float32 (n_samples, n_channels)."""
    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        self.samples = as_2d(np.asarray(self.samples, dtype=np.float32))
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)

    def slice_frames(self, start: int, stop: int) -> "PcmBuffer":
        start = max(0, min(start, self.frames))
        stop = max(start, min(stop, self.frames))
        return PcmBuffer(self.samples[start:stop].copy(), self.sample_rate)

    def mono(self) -> np.ndarray:
        return self.samples.mean(axis=1)


@dataclass(frozen=True)
class StretchOptions:
    """
    Options for one stretch/preview/commit invocation.
    """
    pitch_shift: float = 0.0            # semitones, independent of time
    preserve_formants: bool = True
    algorithm: Algorithm = Algorithm.PHASE_VOCODER
    quality: Quality = Quality.NORMAL
    headroom_db: Optional[float] = None  # peak-normalize the render, None leaves levels untouched
    workers: int = 1                     # segments processed in parallel, spliced in order

    def __post_init__(self):
        object.__setattr__(self, "algorithm", _enum_value(Algorithm, self.algorithm, "algorithm"))
        object.__setattr__(self, "quality", _enum_value(Quality, self.quality, "quality"))
        object.__setattr__(self, "pitch_shift", float(self.pitch_shift or 0.0))
        if abs(self.pitch_shift) > MAX_PITCH_SHIFT:
            raise InvalidOptions(
                f"pitch_shift must be within +/-{MAX_PITCH_SHIFT:g} semitones",
                {"pitch_shift": self.pitch_shift},
            )
        if self.workers < 1:
            raise InvalidOptions("workers must be >= 1", {"workers": self.workers})

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "StretchOptions":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidOptions(f"Unknown stretch options: {', '.join(unknown)}", {"unknown": unknown})
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pitch_shift": self.pitch_shift,
            "preserve_formants": self.preserve_formants,
            "algorithm": self.algorithm.value,
            "quality": self.quality.value,
            "headroom_db": self.headroom_db,
            "workers": self.workers,
        }

    def with_pitch(self, semitones: float) -> "StretchOptions":
        return replace(self, pitch_shift=semitones)


@dataclass(frozen=True)
class DetectionOptions:
    sensitivity: float = 0.5
    min_gap: float = 0.05        # seconds between accepted transients
    estimate_tempo: bool = True

    def __post_init__(self):
        if not 0.0 <= self.sensitivity <= 1.0:
            raise InvalidOptions("sensitivity must be within [0, 1]", {"sensitivity": self.sensitivity})
        if not 0.01 <= self.min_gap <= 1.0:
            raise InvalidOptions("min_gap must be within [0.01, 1] seconds", {"min_gap": self.min_gap})


@dataclass(frozen=True)
class QuantizeSettings:
    target_bpm: float
    strength: float = 1.0
    sensitivity: float = 0.5
    source_bpm: Optional[float] = None   # None: use the detected tempo

    def __post_init__(self):
        if not MIN_BPM <= self.target_bpm <= MAX_BPM:
            raise InvalidOptions(
                f"target_bpm must be within [{MIN_BPM:g}, {MAX_BPM:g}]", {"target_bpm": self.target_bpm}
            )
        if not 0.0 <= self.strength <= 1.0:
            raise InvalidOptions("strength must be within [0, 1]", {"strength": self.strength})


@dataclass(frozen=True)
class RenderResult:
    output_key: str
    duration: float
    format: str
    markers: Tuple[WarpMarker, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_key": self.output_key,
            "duration": self.duration,
            "format": self.format,
            "markers": [m.to_dict() for m in self.markers],
        }
