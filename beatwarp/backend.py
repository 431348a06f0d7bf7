"""
PCM decode / extract / splice / stretch backend.

Sources are either a path to a file libsndfile can read, or an in-memory
``PcmBuffer``. All reads are frame-accurate so consecutive segments share
their boundaries exactly.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import soundfile as sf

from . import algorithms
from .capabilities import Capability, executable_capability, librosa_capability, require_librosa
from .config import settings
from .errors import BackendUnavailable, RenderFailure, UnreadableAudio
from .logger import get_logger
from .models import Algorithm, AudioMetadata, PcmBuffer, Quality
from .workspace import Workspace

logger = get_logger(__name__)

Source = Union[str, Path, PcmBuffer]

# Segments shorter than this skip the stretchers (they produce garbage on a
# handful of samples); see algorithms.short_segment.
MIN_SEGMENT_SECONDS = 0.04


def _sndfile_readable(path: Path) -> bool:
    try:
        sf.info(str(path))
    except (RuntimeError, OSError):
        return False
    return True


class PcmBackend:
    def __init__(self, ffmpeg_exe: Optional[str] = None, rubberband_exe: Optional[str] = None):
        self.ffmpeg_exe = ffmpeg_exe or settings.FFMPEG_EXE
        self.rubberband_exe = rubberband_exe or settings.RUBBERBAND_EXE

    # ---------- capabilities ----------

    def capabilities(self) -> Dict[str, Capability]:
        return {
            "decode": Capability("decode", True, location=f"libsndfile {sf.__libsndfile_version__}"),
            "librosa": librosa_capability(),
            "rubberband": executable_capability("rubberband", self.rubberband_exe),
            "ffmpeg": executable_capability("ffmpeg", self.ffmpeg_exe),
        }

    def analysis_capability(self, source: Source) -> Capability:
        """Whether the full signal of ``source`` can be decoded for analysis."""
        if isinstance(source, PcmBuffer):
            return Capability("analysis", True, location="in-memory buffer")
        return librosa_capability()

    def require(self, algorithm: Algorithm) -> Capability:
        """Fail with BackendUnavailable before any I/O if ``algorithm`` cannot run."""
        algorithm = Algorithm(algorithm)
        if algorithm == Algorithm.HIGH_QUALITY:
            return executable_capability("rubberband", self.rubberband_exe).require()
        if algorithm == Algorithm.PHASE_VOCODER:
            return librosa_capability().require()
        return Capability("overlap-add", True, location="numpy")

    # ---------- decode ----------

    def probe(self, source: Source) -> AudioMetadata:
        if isinstance(source, PcmBuffer):
            return AudioMetadata(
                duration=source.duration,
                sample_rate=source.sample_rate,
                channels=source.channels,
                frames=source.frames,
                format="pcm",
            )
        try:
            info = sf.info(str(source))
        except (RuntimeError, OSError) as e:  # LibsndfileError is a RuntimeError
            raise UnreadableAudio(f"Failed to probe audio file: {e}", {"source": str(source)}) from e
        if info.frames <= 0 or info.channels <= 0:
            raise UnreadableAudio("No audio stream found in file", {"source": str(source)})
        return AudioMetadata(
            duration=info.frames / float(info.samplerate),
            sample_rate=int(info.samplerate),
            channels=int(info.channels),
            frames=int(info.frames),
            format=str(info.format),
        )

    def extract_frames(self, source: Source, start: int, stop: int) -> PcmBuffer:
        if isinstance(source, PcmBuffer):
            return source.slice_frames(start, stop)
        try:
            with sf.SoundFile(str(source)) as f:
                start = max(0, min(start, f.frames))
                stop = max(start, min(stop, f.frames))
                f.seek(start)
                data = f.read(stop - start, dtype="float32", always_2d=True)
                sr = f.samplerate
        except (RuntimeError, OSError) as e:
            raise UnreadableAudio(f"Failed to read audio range: {e}", {"source": str(source)}) from e
        return PcmBuffer(data, sr)

    def extract_range(self, source: Source, start: float, duration: float) -> PcmBuffer:
        sr = self.probe(source).sample_rate
        s0 = int(round(start * sr))
        return self.extract_frames(source, s0, s0 + int(round(duration * sr)))

    def load_mono(self, source: Source) -> Tuple[np.ndarray, int]:
        """Full signal as mono float32 for analysis."""
        if isinstance(source, PcmBuffer):
            return source.mono(), source.sample_rate
        librosa = require_librosa()
        y, sr = librosa.load(str(source), sr=None, mono=True)
        return y.astype(np.float32), int(sr)

    # ---------- splice ----------

    def concatenate(self, buffers: Sequence[PcmBuffer]) -> PcmBuffer:
        if not buffers:
            raise RenderFailure("No segments to concatenate")
        sr = buffers[0].sample_rate
        ch = buffers[0].channels
        for b in buffers:
            if b.sample_rate != sr or b.channels != ch:
                raise RenderFailure(
                    "Segments disagree on sample rate or channel count",
                    data={"expected": [sr, ch], "got": [b.sample_rate, b.channels]},
                )
        return PcmBuffer(np.concatenate([b.samples for b in buffers], axis=0), sr)

    # ---------- stretch ----------

    def apply_time_stretch(
        self,
        buffer: PcmBuffer,
        ratio: float,
        pitch_shift: float = 0.0,
        preserve_formants: bool = True,
        algorithm: Algorithm = Algorithm.PHASE_VOCODER,
        quality: Quality = Quality.NORMAL,
        target_frames: Optional[int] = None,
        workspace: Optional[Workspace] = None,
    ) -> PcmBuffer:
        """
        Stretch ``buffer`` by ``ratio`` (target/source duration) with an
        independent pitch transposition.

        The result is trimmed/padded to ``target_frames`` (default
        ``round(frames * ratio)``) so splices land on exact sample positions.
        """
        if ratio <= 0:
            raise ValueError("ratio must be positive")
        algorithm = Algorithm(algorithm)
        quality = Quality(quality)
        sr = buffer.sample_rate
        if target_frames is None:
            target_frames = int(round(buffer.frames * ratio))

        y = buffer.samples
        if buffer.frames < MIN_SEGMENT_SECONDS * sr:
            logger.debug("Segment of %d frames too short to stretch; transposing in place", buffer.frames)
            out = algorithms.short_segment(y, target_frames, pitch_shift)
        elif algorithm == Algorithm.HIGH_QUALITY:
            exe = executable_capability("rubberband", self.rubberband_exe).require().location
            out = algorithms.rubberband_stretch(
                y, sr, ratio, pitch_shift, preserve_formants, quality, exe, workspace
            )
        elif algorithm == Algorithm.PHASE_VOCODER:
            out = algorithms.phase_vocoder_stretch(y, sr, ratio, pitch_shift, preserve_formants, quality)
        else:
            if pitch_shift and preserve_formants:
                logger.debug("overlap-add has no formant model; shifting pitch without it")
            out = algorithms.overlap_add_stretch(y, sr, ratio, pitch_shift, quality)

        return PcmBuffer(algorithms.fit_length(out, target_frames), sr)

    # ---------- container conversion ----------

    def convert_to_wav(self, in_path: Union[str, Path], out_path: Union[str, Path]) -> Path:
        """Decode any ffmpeg-readable container to 16-bit PCM WAV."""
        exe = executable_capability("ffmpeg", self.ffmpeg_exe).require().location
        cmd = [
            exe, "-y",
            "-i", str(in_path),
            "-vn",
            "-acodec", "pcm_s16le",
            str(out_path),
        ]
        proc = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        if proc.returncode != 0:
            raise UnreadableAudio(
                f"ffmpeg could not decode {in_path}", {"stderr": proc.stderr.strip()[-500:]}
            )
        return Path(out_path)

    def ensure_readable(self, path: Union[str, Path], workspace: Workspace) -> Path:
        """Return ``path`` if libsndfile reads it, else a WAV conversion inside ``workspace``."""
        path = Path(path)
        if _sndfile_readable(path):
            return path
        try:
            return self.convert_to_wav(path, workspace.file(path.stem))
        except BackendUnavailable as e:
            raise UnreadableAudio(
                f"{path.name} is not a PCM container and ffmpeg is unavailable", e.data
            ) from e
