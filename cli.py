import argparse
import json
import os
import sys

from beatwarp.analyze import detect_transients
from beatwarp.backend import PcmBackend
from beatwarp.config import settings
from beatwarp.errors import WarpError
from beatwarp.export import export_wav
from beatwarp.grid import map_tempo, quantize
from beatwarp.logger import setup_logger
from beatwarp.models import Algorithm, Quality, StretchOptions, WarpMarker
from beatwarp.preview import preview
from beatwarp.warp import stretch
from beatwarp.workspace import Workspace


def load_markers(path: str):
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("markers", [])
    return [WarpMarker.from_dict(m) for m in data]


def stretch_options(args) -> StretchOptions:
    return StretchOptions(
        pitch_shift=args.pitch,
        preserve_formants=not args.no_formants,
        algorithm=args.algorithm,
        quality=args.quality,
        headroom_db=args.headroom_db,
        workers=args.workers,
    )


def default_out(input_path: str, tag: str) -> str:
    base = os.path.splitext(os.path.basename(input_path))[0]
    return f"{base}_{tag}.wav"


def cmd_detect(args, backend, wav_path):
    result = detect_transients(
        wav_path,
        sensitivity=args.sensitivity,
        min_gap=args.min_gap,
        estimate_tempo=not args.no_tempo,
        backend=backend,
    )
    print(json.dumps(result.to_dict(), indent=2))


def cmd_quantize(args, backend, wav_path):
    detection = detect_transients(wav_path, sensitivity=args.sensitivity, backend=backend)
    source_bpm = args.source_bpm or detection.detected_bpm
    if not source_bpm:
        print("No tempo detected; pass --source-bpm", file=sys.stderr)
        return 1

    target_bpm = args.bpm if args.bpm else round(source_bpm)
    mapping = map_tempo(source_bpm, target_bpm, detection.duration)
    markers = quantize(detection.transients, mapping.beat_grid, args.strength)

    if args.markers_out:
        with open(args.markers_out, "w", encoding="utf-8") as f:
            json.dump({"markers": [m.to_dict() for m in markers]}, f, indent=2)

    out = stretch(wav_path, markers, stretch_options(args), backend=backend)
    out_path = args.out or default_out(args.input, f"quantized_{target_bpm:.2f}")
    export_wav(out_path, out)
    print(f"OK: {len(markers)} marker(s), wrote {out_path}")
    return 0


def cmd_stretch(args, backend, wav_path):
    markers = load_markers(args.markers)
    out = stretch(wav_path, markers, stretch_options(args), backend=backend)
    out_path = args.out or default_out(args.input, "warped")
    export_wav(out_path, out)
    print(f"OK: wrote {out_path} ({out.duration:.3f}s)")
    return 0


def cmd_preview(args, backend, wav_path):
    markers = load_markers(args.markers)
    out = preview(wav_path, markers, args.start, args.end, stretch_options(args), backend=backend)
    out_path = args.out or default_out(args.input, f"preview_{args.start:g}-{args.end:g}")
    export_wav(out_path, out)
    print(f"OK: wrote {out_path} ({out.duration:.3f}s)")
    return 0


def add_render_args(p):
    p.add_argument("--algorithm", choices=[a.value for a in Algorithm], default=Algorithm.PHASE_VOCODER.value)
    p.add_argument("--quality", choices=[q.value for q in Quality], default=Quality.NORMAL.value)
    p.add_argument("--pitch", type=float, default=0.0, help="Pitch shift in semitones (default 0)")
    p.add_argument("--no-formants", action="store_true", help="Do not preserve formants when shifting pitch")
    p.add_argument("--headroom-db", type=float, default=None, help="Peak-normalize output to -N dBFS")
    p.add_argument("--workers", type=int, default=1, help="Segments rendered in parallel (default 1)")
    p.add_argument("--out", default=None, help="Output wav path")


def build_parser():
    p = argparse.ArgumentParser(description="Beatwarp: warp-marker time stretching and transient quantizing.")
    p.add_argument("--log-level", default=settings.LOG_LEVEL)
    sub = p.add_subparsers(dest="command", required=True)

    d = sub.add_parser("detect", help="Detect transients and estimate tempo")
    d.add_argument("input", help="Input audio file")
    d.add_argument("--sensitivity", type=float, default=0.5, help="0.0..1.0 (default 0.5)")
    d.add_argument("--min-gap", type=float, default=0.05, help="Minimum seconds between transients")
    d.add_argument("--no-tempo", action="store_true", help="Skip tempo estimation")
    d.set_defaults(func=cmd_detect)

    q = sub.add_parser("quantize", help="Snap detected transients onto a tempo grid and render")
    q.add_argument("input", help="Input audio file")
    q.add_argument("--bpm", type=float, default=None, help="Target BPM (default: rounded estimate)")
    q.add_argument("--source-bpm", type=float, default=None, help="Source BPM (default: detected)")
    q.add_argument("--strength", type=float, default=0.7, help="0.0..1.0 (default 0.7)")
    q.add_argument("--sensitivity", type=float, default=0.5)
    q.add_argument("--markers-out", default=None, help="Also write the markers as JSON")
    add_render_args(q)
    q.set_defaults(func=cmd_quantize)

    s = sub.add_parser("stretch", help="Render a marker file against an input")
    s.add_argument("input", help="Input audio file")
    s.add_argument("markers", help="JSON file with a list of markers")
    add_render_args(s)
    s.set_defaults(func=cmd_stretch)

    v = sub.add_parser("preview", help="Render a short window of the warped audio")
    v.add_argument("input", help="Input audio file")
    v.add_argument("markers", help="JSON file with a list of markers")
    v.add_argument("--start", type=float, required=True)
    v.add_argument("--end", type=float, required=True)
    add_render_args(v)
    v.set_defaults(func=cmd_preview)
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logger(level=args.log_level, log_file=settings.LOG_FILE)
    backend = PcmBackend()

    # non-WAV inputs are converted with ffmpeg into a throwaway workspace
    with Workspace("cli") as ws:
        try:
            wav_path = backend.ensure_readable(args.input, ws)
            return args.func(args, backend, wav_path) or 0
        except WarpError as e:
            print(f"ERROR: {e.message}", file=sys.stderr)
            return 2


if __name__ == "__main__":
    sys.exit(main())
