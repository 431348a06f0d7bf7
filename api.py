import os
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, Field

from beatwarp.config import settings
from beatwarp.errors import (
    BackendUnavailable,
    ClipNotFound,
    InvalidMapping,
    InvalidOptions,
    UnreadableAudio,
    WarpError,
)
from beatwarp.export import wav_bytes
from beatwarp.grid import merge_with_anchors
from beatwarp.logger import get_logger, setup_logger
from beatwarp.models import Algorithm, AudioClip, Quality, StretchOptions, WarpMarker
from beatwarp.pipeline import WarpPipeline
from beatwarp.warp import validate_markers
from beatwarp.workspace import Workspace

setup_logger(level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)
logger = get_logger(__name__)

app = FastAPI(title="Beatwarp")

# single-process wiring: in-memory clip/marker store, local storage, thread-pool queue
PIPELINE = WarpPipeline()

STATUS_CODES = {
    ClipNotFound: 404,
    InvalidMapping: 400,
    InvalidOptions: 422,
    UnreadableAudio: 400,
    BackendUnavailable: 503,
}


@app.exception_handler(WarpError)
async def warp_error_handler(request, exc: WarpError):
    code = next((c for cls, c in STATUS_CODES.items() if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=code, content=exc.to_dict())


class MarkerModel(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source_time: float
    target_time: float
    is_anchor: bool = False
    transient_strength: Optional[float] = None

    def to_marker(self) -> WarpMarker:
        return WarpMarker.from_dict(self.model_dump())


class ClipResponse(BaseModel):
    clip_id: str
    duration: float
    sample_rate: int
    channels: int


class MarkerUpdate(BaseModel):
    source_time: Optional[float] = None
    target_time: Optional[float] = None
    is_anchor: Optional[bool] = None
    transient_strength: Optional[float] = None


class MarkersRequest(BaseModel):
    markers: List[MarkerModel]


class DetectRequest(BaseModel):
    sensitivity: float = Field(0.5, ge=0.0, le=1.0)
    min_gap: float = Field(0.05, ge=0.01, le=1.0)


class QuantizeRequest(BaseModel):
    target_bpm: float = Field(..., ge=20, le=300)
    strength: float = Field(1.0, ge=0.0, le=1.0)
    sensitivity: float = Field(0.5, ge=0.0, le=1.0)
    source_bpm: Optional[float] = None
    apply: bool = False   # replace the clip's unpinned markers with the proposal


class PreviewRequest(BaseModel):
    start_time: float = Field(..., ge=0.0)
    end_time: float
    pitch_shift: float = 0.0
    preserve_formants: bool = True
    algorithm: Algorithm = Algorithm.PHASE_VOCODER
    quality: Quality = Quality.FAST


class CommitRequest(BaseModel):
    algorithm: Algorithm = Algorithm.PHASE_VOCODER
    quality: Quality = Quality.HIGH
    pitch_shift: Optional[float] = None
    preserve_formants: Optional[bool] = None


@app.post("/api/clips", response_model=ClipResponse)
async def upload(file: UploadFile = File(...)):
    suffix = Path(file.filename or "").suffix.lower() or ".wav"
    key = PIPELINE.storage.make_key("uploads", suffix)
    in_path = PIPELINE.storage.abs_path(key)
    in_path.parent.mkdir(parents=True, exist_ok=True)

    async with aiofiles.open(in_path, "wb") as f:
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            await f.write(chunk)

    try:
        with Workspace("upload") as ws:
            meta = PIPELINE.backend.probe(PIPELINE.backend.ensure_readable(in_path, ws))
    except WarpError:
        PIPELINE.storage.delete(key)
        raise

    clip = PIPELINE.repo.add_clip(AudioClip(id=uuid.uuid4().hex, source_key=key, duration=meta.duration))
    logger.info("Uploaded clip %s (%s, %.3fs)", clip.id, key, meta.duration)
    return ClipResponse(clip_id=clip.id, duration=meta.duration, sample_rate=meta.sample_rate, channels=meta.channels)


@app.post("/api/clips/{clip_id}/transients")
def transients(clip_id: str, req: DetectRequest):
    clip = PIPELINE.repo.get_clip(clip_id)
    return PIPELINE.run_detection(
        {"source_key": clip.source_key, "sensitivity": req.sensitivity, "min_gap": req.min_gap}
    )


@app.get("/api/status")
def backend_status():
    return {name: cap.to_dict() for name, cap in PIPELINE.backend.capabilities().items()}


@app.get("/api/clips/{clip_id}/markers")
def list_markers(clip_id: str):
    return {"markers": [m.to_dict() for m in PIPELINE.repo.list_markers(clip_id)]}


@app.put("/api/clips/{clip_id}/markers")
def replace_markers(clip_id: str, req: MarkersRequest):
    clip = PIPELINE.repo.get_clip(clip_id)
    markers = validate_markers([m.to_marker() for m in req.markers], clip.duration)
    stored = PIPELINE.repo.replace_markers(clip_id, markers)
    return {"markers": [m.to_dict() for m in stored]}


def _find_marker(clip_id: str, marker_id: str) -> WarpMarker:
    for m in PIPELINE.repo.list_markers(clip_id):
        if m.id == marker_id:
            return m
    raise HTTPException(status_code=404, detail="Warp marker not found")


@app.post("/api/clips/{clip_id}/markers", status_code=201)
def create_marker(clip_id: str, req: MarkerModel):
    clip = PIPELINE.repo.get_clip(clip_id)
    new = req.to_marker()
    existing = PIPELINE.repo.list_markers(clip_id)
    if any(m.id == new.id for m in existing):
        raise HTTPException(status_code=409, detail="Warp marker id already exists")
    validate_markers(existing + [new], clip.duration)
    return PIPELINE.repo.upsert_marker(clip_id, new).to_dict()


@app.put("/api/clips/{clip_id}/markers/{marker_id}")
def update_marker(clip_id: str, marker_id: str, req: MarkerUpdate):
    clip = PIPELINE.repo.get_clip(clip_id)
    current = _find_marker(clip_id, marker_id)
    updated = replace(current, **req.model_dump(exclude_none=True))
    others = [m for m in PIPELINE.repo.list_markers(clip_id) if m.id != marker_id]
    # a single-marker edit must leave the whole mapping valid
    validate_markers(others + [updated], clip.duration)
    return PIPELINE.repo.upsert_marker(clip_id, updated).to_dict()


@app.delete("/api/clips/{clip_id}/markers/{marker_id}")
def delete_marker(clip_id: str, marker_id: str):
    clip = PIPELINE.repo.get_clip(clip_id)
    _find_marker(clip_id, marker_id)
    validate_markers([m for m in PIPELINE.repo.list_markers(clip_id) if m.id != marker_id], clip.duration)
    PIPELINE.repo.delete_marker(clip_id, marker_id)
    return {"deleted": True, "marker_id": marker_id}


@app.delete("/api/clips/{clip_id}/markers")
def delete_all_markers(clip_id: str):
    PIPELINE.repo.get_clip(clip_id)
    PIPELINE.repo.replace_markers(clip_id, [])
    return {"deleted": True, "message": "All warp markers deleted"}


@app.get("/api/clips/{clip_id}/tempo")
def tempo(clip_id: str):
    return PIPELINE.tempo_info(clip_id)


@app.post("/api/clips/{clip_id}/quantize")
def quantize(clip_id: str, req: QuantizeRequest):
    clip = PIPELINE.repo.get_clip(clip_id)
    result = PIPELINE.run_quantize({
        "source_key": clip.source_key,
        "target_bpm": req.target_bpm,
        "strength": req.strength,
        "sensitivity": req.sensitivity,
        "source_bpm": req.source_bpm,
    })
    if req.apply:
        proposed = [WarpMarker.from_dict(m) for m in result["markers"]]
        merged = merge_with_anchors(PIPELINE.repo.list_markers(clip_id), proposed)
        PIPELINE.repo.replace_markers(clip_id, validate_markers(merged, clip.duration))
        result["markers"] = [m.to_dict() for m in merged]
    return result


@app.post("/api/clips/{clip_id}/preview")
def preview(clip_id: str, req: PreviewRequest):
    try:
        options = StretchOptions(
            pitch_shift=req.pitch_shift,
            preserve_formants=req.preserve_formants,
            algorithm=req.algorithm,
            quality=req.quality,
        )
        rendered = PIPELINE.render_preview(clip_id, req.start_time, req.end_time, options)
    except ClipNotFound:
        raise
    except WarpError as e:
        # previews are best-effort; the editor keeps working without one
        logger.warning("Preview of clip %s unavailable: %s", clip_id, e.message)
        return {"preview": None, "message": "No preview available", "error": e.to_dict()}

    # rendered in memory and streamed back; previews never reach storage
    return Response(content=wav_bytes(rendered), media_type="audio/wav")


@app.post("/api/clips/{clip_id}/commit", status_code=202)
def commit(clip_id: str, req: CommitRequest):
    ticket = PIPELINE.commit(
        clip_id,
        algorithm=req.algorithm,
        quality=req.quality,
        pitch_shift=req.pitch_shift,
        preserve_formants=req.preserve_formants,
    )
    return {"job_id": ticket.job_id, "clip_id": ticket.clip_id, "state": "pending"}


@app.get("/api/jobs/{job_id}")
def job_status(job_id: str) -> Dict[str, Any]:
    try:
        return PIPELINE.queue.status(job_id).to_dict()
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown job_id")


@app.get("/api/clips/{clip_id}/download")
def download(clip_id: str):
    clip = PIPELINE.repo.get_clip(clip_id)
    if not clip.rendered_key:
        raise HTTPException(status_code=404, detail="No committed render for this clip.")
    path = PIPELINE.storage.abs_path(clip.rendered_key)
    return FileResponse(str(path), filename=os.path.basename(path), media_type="audio/wav")
