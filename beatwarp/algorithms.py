"""
Stretch algorithm variants.

All functions take and return float32 audio shaped (n_samples, n_channels)
and use ``ratio = target duration / source duration`` (> 1 slows down).
Pitch (semitones) is applied independently of the duration change.
"""

from __future__ import annotations

import subprocess
from typing import List, Optional

import numpy as np
import soundfile as sf
from scipy.ndimage import uniform_filter1d
from scipy.signal import resample

from .capabilities import require_librosa
from .errors import RenderFailure
from .logger import get_logger
from .models import Algorithm, Quality
from .workspace import Workspace

logger = get_logger(__name__)

_EPS = 1e-10

# Rubber Band crispness per quality level
RUBBERBAND_CRISPNESS = {Quality.FAST: 2, Quality.NORMAL: 4, Quality.HIGH: 6}

# Phase vocoder FFT size per quality level (hop = n_fft // 4)
PV_FFT = {Quality.FAST: 1024, Quality.NORMAL: 2048, Quality.HIGH: 4096}

# WSOLA frame length / similarity search tolerance in seconds
OLA_FRAME = {Quality.FAST: (0.025, 0.005), Quality.NORMAL: (0.040, 0.010), Quality.HIGH: (0.060, 0.015)}

# stable speed range of a single WSOLA pass
OLA_MIN_SPEED, OLA_MAX_SPEED = 0.5, 2.0


def pitch_factor(semitones: float) -> float:
    return float(2.0 ** (semitones / 12.0))


def fit_length(y2d: np.ndarray, frames: int) -> np.ndarray:
    """Trim or zero-pad (at the end) to exactly ``frames`` samples."""
    n = y2d.shape[0]
    if n == frames:
        return y2d
    if n > frames:
        return y2d[:frames]
    pad = np.zeros((frames - n, y2d.shape[1]), dtype=y2d.dtype)
    return np.vstack([y2d, pad])


def resample_to(y2d: np.ndarray, frames: int) -> np.ndarray:
    """Band-limited resample to ``frames`` samples (couples time and pitch)."""
    if frames <= 0:
        return np.zeros((0, y2d.shape[1]), dtype=np.float32)
    if y2d.shape[0] == frames:
        return y2d
    if y2d.shape[0] == 0:
        return np.zeros((frames, y2d.shape[1]), dtype=np.float32)
    if y2d.shape[0] == 1:
        return np.repeat(y2d, frames, axis=0).astype(np.float32)
    return resample(y2d, frames, axis=0).astype(np.float32)


def short_segment(y2d: np.ndarray, frames: int, pitch_shift: float = 0.0) -> np.ndarray:
    """
    Render a segment too short for the stretchers.

    The pitch is moved by resampling to ``n / pitch_factor`` samples; the
    duration is then matched by trimming or by mirror-extending the tail, so
    a ratio change never transposes and a transposition survives ratio 1.
    """
    if frames <= 0:
        return np.zeros((0, y2d.shape[1]), dtype=np.float32)
    n = y2d.shape[0]
    if n == 0:
        return np.zeros((frames, y2d.shape[1]), dtype=np.float32)
    if pitch_shift:
        y2d = resample_to(y2d, max(1, int(round(n / pitch_factor(pitch_shift)))))
    if y2d.shape[0] >= frames:
        return y2d[:frames].astype(np.float32)
    return np.pad(y2d, ((0, frames - y2d.shape[0]), (0, 0)), mode="symmetric").astype(np.float32)


# ---------------------------------------------------------------------------
# high-quality: Rubber Band CLI
# ---------------------------------------------------------------------------

def rubberband_stretch(
    y2d: np.ndarray,
    sr: int,
    ratio: float,
    pitch_shift: float,
    preserve_formants: bool,
    quality: Quality,
    executable: str,
    workspace: Optional[Workspace] = None,
) -> np.ndarray:
    """
    Stretch with the Rubber Band command line tool.

    The segment round-trips through float WAV files inside the invocation
    workspace; a private workspace is opened when none is given.
    """
    if workspace is None:
        with Workspace("rubberband") as ws:
            return rubberband_stretch(y2d, sr, ratio, pitch_shift, preserve_formants, quality, executable, ws)

    src = workspace.file("rb_in")
    dst = workspace.file("rb_out")
    sf.write(str(src), y2d, sr, subtype="FLOAT")

    cmd = [
        executable, "-q",
        "-t", f"{ratio:.9f}",
        "-p", f"{pitch_shift:.6f}",
        "-c", str(RUBBERBAND_CRISPNESS[quality]),
    ]
    if preserve_formants:
        cmd.append("--formant")
    cmd += [str(src), str(dst)]

    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if proc.returncode != 0:
        raise RenderFailure(
            f"rubberband exited with code {proc.returncode}: {proc.stderr.strip()}",
            algorithm=Algorithm.HIGH_QUALITY.value,
        )
    out, _ = sf.read(str(dst), dtype="float32", always_2d=True)
    return out


# ---------------------------------------------------------------------------
# phase-vocoder: librosa
# ---------------------------------------------------------------------------

def _restore_envelope(reference: np.ndarray, shifted: np.ndarray, n_fft: int, hop: int, librosa) -> np.ndarray:
    """
    Secondary filter pass approximating formant preservation.

    Reweights the shifted spectrum so its smoothed spectral envelope follows
    the envelope of the unshifted signal frame by frame.
    Arrays are shaped (channels, n).
    """
    ref_mag = np.abs(librosa.stft(reference, n_fft=n_fft, hop_length=hop))
    spec = librosa.stft(shifted, n_fft=n_fft, hop_length=hop)

    width = max(3, n_fft // 64)
    env_ref = uniform_filter1d(ref_mag, size=width, axis=-2)
    env_out = uniform_filter1d(np.abs(spec), size=width, axis=-2)

    frames = min(env_ref.shape[-1], spec.shape[-1])
    gain = np.clip(env_ref[..., :frames] / (env_out[..., :frames] + _EPS), 0.1, 10.0)
    spec = spec[..., :frames] * gain
    return librosa.istft(spec, hop_length=hop, n_fft=n_fft, length=shifted.shape[-1])


def phase_vocoder_stretch(
    y2d: np.ndarray,
    sr: int,
    ratio: float,
    pitch_shift: float = 0.0,
    preserve_formants: bool = True,
    quality: Quality = Quality.NORMAL,
) -> np.ndarray:
    librosa = require_librosa()
    n_fft = PV_FFT[quality]
    hop = n_fft // 4

    # librosa wants (channels, n)
    y = np.ascontiguousarray(y2d.T, dtype=np.float32)

    if pitch_shift:
        shifted = librosa.effects.pitch_shift(y, sr=sr, n_steps=pitch_shift, n_fft=n_fft, hop_length=hop)
        if preserve_formants:
            shifted = _restore_envelope(y, shifted, n_fft, hop, librosa)
        y = shifted

    if abs(ratio - 1.0) > 1e-9:
        y = librosa.effects.time_stretch(y, rate=1.0 / ratio, n_fft=n_fft, hop_length=hop)

    return np.ascontiguousarray(y.T, dtype=np.float32)


# ---------------------------------------------------------------------------
# overlap-add: WSOLA
# ---------------------------------------------------------------------------

def chain_speeds(speed: float) -> List[float]:
    """
    Split a playback speed into passes that each stay within 0.5x..2x.

    >>> chain_speeds(0.25)
    [0.5, 0.5]
    """
    if speed <= 0:
        raise ValueError("speed must be positive")
    passes: List[float] = []
    remaining = float(speed)
    while remaining < OLA_MIN_SPEED:
        passes.append(OLA_MIN_SPEED)
        remaining /= OLA_MIN_SPEED
    while remaining > OLA_MAX_SPEED:
        passes.append(OLA_MAX_SPEED)
        remaining /= OLA_MAX_SPEED
    if abs(remaining - 1.0) > 1e-9:
        passes.append(remaining)
    return passes


def wsola(y2d: np.ndarray, speed: float, frame: int, tolerance: int) -> np.ndarray:
    """
    Waveform-similarity overlap-add for a single pass.

    speed > 1 shortens, speed < 1 lengthens. All channels share the alignment
    offsets (searched on the mono mix) so the stereo image stays locked.
    """
    if not OLA_MIN_SPEED - 1e-9 <= speed <= OLA_MAX_SPEED + 1e-9:
        raise ValueError(f"WSOLA pass speed {speed} outside [{OLA_MIN_SPEED}, {OLA_MAX_SPEED}]")

    n, n_ch = y2d.shape
    out_len = int(np.ceil(n / speed))
    if n == 0 or out_len == 0:
        return np.zeros((out_len, n_ch), dtype=np.float32)

    frame = max(4, frame)
    hop_out = frame // 2
    hop_in = hop_out * speed
    tol = max(0, tolerance)

    # pad so every search window and continuation read stays in bounds
    head = tol
    tail = frame + hop_out + 2 * tol + int(np.ceil(hop_in)) + 1
    padded = np.vstack([
        np.zeros((head, n_ch), dtype=np.float32),
        y2d.astype(np.float32),
        np.zeros((tail, n_ch), dtype=np.float32),
    ])
    mono = padded.mean(axis=1)

    window = np.hanning(frame + 1)[:frame].astype(np.float32)  # periodic hann
    out = np.zeros((out_len + frame, n_ch), dtype=np.float32)
    norm = np.zeros(out_len + frame, dtype=np.float32)

    prev_start = None
    k = 0
    while k * hop_out < out_len:
        nominal = head + int(round(k * hop_in))
        if prev_start is None or tol == 0:
            start = nominal
        else:
            natural = mono[prev_start + hop_out: prev_start + hop_out + frame]
            region = mono[nominal - tol: nominal + tol + frame]
            corr = np.correlate(region, natural, mode="valid")
            start = nominal - tol + int(np.argmax(corr))

        pos = k * hop_out
        out[pos:pos + frame] += padded[start:start + frame] * window[:, None]
        norm[pos:pos + frame] += window
        prev_start = start
        k += 1

    norm = np.maximum(norm, 1e-3)
    return (out[:out_len] / norm[:out_len, None]).astype(np.float32)


def overlap_add_stretch(
    y2d: np.ndarray,
    sr: int,
    ratio: float,
    pitch_shift: float = 0.0,
    quality: Quality = Quality.NORMAL,
) -> np.ndarray:
    """
    Time-domain stretch; ratios outside 0.5x..2x are reached by chained passes.

    Pitch is decoupled by resampling first (changes pitch and length by the
    pitch factor) and then stretching the result back to the wanted length.
    """
    frame_s, tol_s = OLA_FRAME[quality]
    frame = int(round(frame_s * sr))
    tol = int(round(tol_s * sr))

    n = y2d.shape[0]
    target = max(1, int(round(n * ratio)))
    y = y2d.astype(np.float32)

    if pitch_shift:
        y = resample_to(y, max(1, int(round(n / pitch_factor(pitch_shift)))))

    speed = y.shape[0] / float(target)
    for step in chain_speeds(speed):
        y = wsola(y, step, frame, tol)
    return y
