from .analyze import detect_transients
from .grid import map_tempo, quantize
from .pipeline import WarpPipeline
from .preview import preview
from .warp import stretch, validate_markers

__all__ = [
    "detect_transients",
    "map_tempo",
    "quantize",
    "preview",
    "stretch",
    "validate_markers",
    "WarpPipeline",
]
