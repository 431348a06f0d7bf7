"""
Shared fixtures: synthetic click tracks written to disk with soundfile.

No real audio is needed; every signal is generated from numpy so the tests are
deterministic and fast.
"""
import shutil

import numpy as np
import pytest
import soundfile as sf

from beatwarp.backend import PcmBackend
from beatwarp.jobs import LocalJobQueue
from beatwarp.models import PcmBuffer, WarpMarker
from beatwarp.pipeline import WarpPipeline
from beatwarp.repos import InMemoryRepository
from beatwarp.storage import LocalStorage

SR = 22050


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: renders through a real stretch backend")
    config.addinivalue_line("markers", "requires_rubberband: needs the rubberband executable on PATH")


requires_rubberband = pytest.mark.skipif(
    shutil.which("rubberband") is None, reason="rubberband executable not installed"
)


def click_track(bpm: float = 120.0, duration: float = 4.0, sr: int = SR, channels: int = 1) -> np.ndarray:
    """Short decaying noise bursts on every beat, silence in between."""
    rng = np.random.default_rng(1234)
    n = int(round(duration * sr))
    y = np.zeros(n, dtype=np.float32)
    click_len = int(0.01 * sr)
    decay = np.exp(-np.linspace(0.0, 8.0, click_len)).astype(np.float32)
    interval = 60.0 / bpm
    t = 0.0
    while t < duration:
        i = int(round(t * sr))
        seg = y[i:i + click_len]
        seg += 0.9 * decay[: len(seg)] * np.sign(rng.standard_normal(len(seg))).astype(np.float32)
        t += interval
    y = np.clip(y, -1.0, 1.0)
    if channels == 1:
        return y
    return np.stack([y * (1.0 - 0.1 * c) for c in range(channels)], axis=1)


def sine(freq: float = 440.0, duration: float = 1.0, sr: int = SR) -> np.ndarray:
    t = np.arange(int(round(duration * sr))) / float(sr)
    return (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def dominant_freq(y: np.ndarray, sr: int = SR) -> float:
    spectrum = np.abs(np.fft.rfft(y * np.hanning(len(y))))
    return float(np.fft.rfftfreq(len(y), 1.0 / sr)[np.argmax(spectrum)])


def marker(source: float, target: float, mid: str = None) -> WarpMarker:
    return WarpMarker(id=mid or f"m{source:g}-{target:g}", source_time=source, target_time=target)


@pytest.fixture
def backend():
    return PcmBackend()


@pytest.fixture
def click_wav(tmp_path):
    path = tmp_path / "clicks.wav"
    sf.write(str(path), click_track(), SR, subtype="FLOAT")
    return path


@pytest.fixture
def stereo_wav(tmp_path):
    path = tmp_path / "stereo.wav"
    sf.write(str(path), click_track(duration=10.0, channels=2), SR, subtype="FLOAT")
    return path


@pytest.fixture
def ramp_buffer():
    """Ten seconds of a 2-channel ramp: every sample is distinct, so copies are easy to verify."""
    sr = 1000
    n = 10 * sr
    left = np.linspace(-0.9, 0.9, n, dtype=np.float32)
    return PcmBuffer(np.stack([left, -left], axis=1), sr)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def pipeline(storage, tmp_path, monkeypatch):
    """Pipeline over a manual queue (jobs run only when the test calls run_next)."""
    from beatwarp.config import settings
    monkeypatch.setattr(settings, "WORKSPACE_DIR", str(tmp_path / "work"))
    return WarpPipeline(
        repo=InMemoryRepository(),
        storage=storage,
        queue=LocalJobQueue(max_workers=0),
        backend=PcmBackend(),
    )
