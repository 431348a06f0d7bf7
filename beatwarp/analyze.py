"""
Transient (onset) detection on a peak-energy envelope.

Pipeline: rectify + downsample to a fixed analysis rate, adaptive threshold
from the recording's own loudness distribution, local-maximum picking with a
minimum inter-onset gap, then an optional tempo estimate that back-annotates
each transient with the beat it lands on.
"""

from __future__ import annotations

import math
from typing import List, Optional

import numpy as np

from .backend import PcmBackend, Source
from .config import settings
from .logger import get_logger
from .models import DetectionOptions, TransientDetectionResult, TransientEvent

logger = get_logger(__name__)

_EPS = 1e-9

TEMPO_RANGE = (60.0, 200.0)   # musically plausible BPM window
TEMPO_WINDOW = 50             # transients used for the interval average
BEAT_TOLERANCE = 0.2          # fraction of a beat interval


def peak_envelope(y: np.ndarray, sr: int, rate: int = 100) -> np.ndarray:
    """
    Mono peak envelope at ``rate`` values per second, normalized to [0, 1].
    Each value is the peak absolute amplitude of its hop.
    """
    hop = max(1, int(round(sr / float(rate))))
    n_frames = int(math.ceil(len(y) / float(hop)))
    if n_frames == 0:
        return np.zeros(0, dtype=np.float32)
    padded = np.zeros(n_frames * hop, dtype=np.float32)
    padded[: len(y)] = np.abs(y)
    env = padded.reshape(n_frames, hop).max(axis=1)
    peak = float(env.max())
    if peak > 0:
        env = env / peak
    return env.astype(np.float32)


def synthetic_envelope(duration: float, rate: int = 100, seed: int = 0) -> np.ndarray:
    """
    Deterministic stand-in envelope used when the signal cannot be decoded.
    Low fidelity on purpose; results built on it are flagged ``degraded``.
    """
    n = int(math.ceil(duration * rate))
    rng = np.random.default_rng(seed)
    t = np.arange(n) / float(max(n, 1))
    return (0.3 + 0.4 * rng.random(n) + 0.3 * np.sin(t * np.pi * 10)).astype(np.float32)


def adaptive_threshold(envelope: np.ndarray, sensitivity: float) -> float:
    """
    Value at the ``(1 - sensitivity*0.3)`` percentile of the envelope, scaled by 0.8.

    Higher sensitivity selects a lower percentile, hence a lower threshold.
    """
    if envelope.size == 0:
        return _EPS
    ordered = np.sort(envelope)  # ascending: index k is the k/n percentile
    rank = int(math.floor(len(ordered) * (1.0 - sensitivity * 0.3)))
    value = float(ordered[min(rank, len(ordered) - 1)]) * 0.8
    # silence-dominated recordings put the percentile on the noise floor
    return max(value, _EPS)


def pick_transients(
    envelope: np.ndarray,
    frame_seconds: float,
    threshold: float,
    min_gap: float,
) -> List[TransientEvent]:
    if envelope.size < 3:
        return []

    mid = envelope[1:-1]
    is_peak = (mid > envelope[:-2]) & (mid > envelope[2:]) & (mid > threshold)
    candidates = np.nonzero(is_peak)[0] + 1

    transients: List[TransientEvent] = []
    last_time = -min_gap
    for i in candidates:
        time = float(i) * frame_seconds
        if time - last_time < min_gap:
            continue
        strength = min(float(envelope[i]) / threshold, 1.0)
        transients.append(TransientEvent(time=time, strength=strength))
        last_time = time
    return transients


def estimate_bpm(transients: List[TransientEvent]) -> Optional[float]:
    """
    Average inter-onset interval of the first transients, folded by 2x / 0.5x
    into the 60-200 BPM window when possible.
    """
    if len(transients) < 4:
        return None
    times = np.array([t.time for t in transients[:TEMPO_WINDOW]], dtype=np.float64)
    avg_interval = float(np.mean(np.diff(times)))
    if avg_interval <= 0:
        return None
    raw = 60.0 / avg_interval
    for candidate in (raw, raw / 2.0, raw * 2.0):
        if TEMPO_RANGE[0] <= candidate <= TEMPO_RANGE[1]:
            return candidate
    return raw


def annotate_beats(transients: List[TransientEvent], bpm: float) -> None:
    beat_interval = 60.0 / bpm
    for t in transients:
        position = t.time / beat_interval
        nearest = math.floor(position + 0.5)
        if abs(position - nearest) < BEAT_TOLERANCE:
            t.suggested_beat = int(nearest)


def detect_transients(
    source: Source,
    sensitivity: float = 0.5,
    min_gap: float = 0.05,
    estimate_tempo: bool = True,
    backend: Optional[PcmBackend] = None,
    analysis_rate: Optional[int] = None,
) -> TransientDetectionResult:
    """
    Detect transients in ``source``.

    Metadata probing must succeed (UnreadableAudio otherwise). If the signal
    itself cannot be decoded for analysis, a synthetic envelope is used, a
    warning is logged and the result is marked ``degraded``.
    """
    options = DetectionOptions(sensitivity=sensitivity, min_gap=min_gap, estimate_tempo=estimate_tempo)
    backend = backend or PcmBackend()
    rate = analysis_rate or settings.ANALYSIS_RATE_HZ

    meta = backend.probe(source)

    envelope = None
    reason = None
    capability = backend.analysis_capability(source)
    if capability.available:
        try:
            y, sr = backend.load_mono(source)
        except Exception as e:  # noqa: BLE001 - advisory output, degrade instead of failing
            reason = f"decode failed: {type(e).__name__}: {e}"
        else:
            envelope = peak_envelope(y, sr, rate)
            frame_seconds = max(1, int(round(sr / float(rate)))) / float(sr)
    else:
        reason = capability.reason

    degraded = envelope is None
    if degraded:
        logger.warning("DEGRADED transient analysis for %s (%s); using synthetic envelope", source, reason)
        envelope = synthetic_envelope(meta.duration, rate, seed=int(meta.frames))
        frame_seconds = 1.0 / rate

    threshold = adaptive_threshold(envelope, options.sensitivity)
    transients = pick_transients(envelope, frame_seconds, threshold, options.min_gap)

    detected_bpm = None
    if options.estimate_tempo:
        detected_bpm = estimate_bpm(transients)
        if detected_bpm:
            annotate_beats(transients, detected_bpm)

    logger.info(
        "Detected %d transient(s) in %.2fs of audio (bpm=%s%s)",
        len(transients), meta.duration,
        f"{detected_bpm:.2f}" if detected_bpm else "n/a",
        ", degraded" if degraded else "",
    )
    return TransientDetectionResult(
        transients=transients,
        duration=meta.duration,
        detected_bpm=detected_bpm,
        degraded=degraded,
    )
