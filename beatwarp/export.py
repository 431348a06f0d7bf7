import io
from pathlib import Path
from typing import Union

import soundfile as sf

from .models import PcmBuffer


def export_wav(path: Union[str, Path], buffer: PcmBuffer, subtype: str = "PCM_16") -> Path:
    sf.write(
        str(path),
        buffer.samples,
        buffer.sample_rate,
        subtype=subtype,
    )
    return Path(path)


def wav_bytes(buffer: PcmBuffer, subtype: str = "PCM_16") -> bytes:
    out = io.BytesIO()
    sf.write(out, buffer.samples, buffer.sample_rate, subtype=subtype, format="WAV")
    return out.getvalue()
