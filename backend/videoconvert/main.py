# backend/videoconvert/main.py
from fastapi import FastAPI, UploadFile, File, Depends, HTTPException, Form, Body, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging, os, shutil, aiofiles

from .config import AppConfig, setup_logging
from .db import init_db, engine
from .errors import InvalidInput, NotFound, StorageError
from .ffmpeg_utils import FFmpegTool
from .history import HistoryService
from .jobs import JobManager
from .models import JobStatus, OperationKind
from .schemas import JobRequest, JobSummary
from .store import Store

config = AppConfig.from_env()
setup_logging(config.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Video Convert API")

# --- STORAGE ---
config.ensure_dirs()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/files", StaticFiles(directory=str(config.output_dir)), name="files")

store = Store(engine)
job_manager = JobManager(store, FFmpegTool(config), config)
history_service = HistoryService(store, config.public_base_url)


def get_store() -> Store:
    return store


def get_job_manager() -> JobManager:
    return job_manager


def get_history_service() -> HistoryService:
    return history_service


def get_config() -> AppConfig:
    return config


@app.on_event("startup")
def startup():
    config.ensure_dirs()
    init_db()
    logger.info("Video Convert API ready, serving results from %s", config.output_dir)


# Save uploaded file in chunks (async)
async def save_upload_file(upload_file: UploadFile, destination: str) -> int:
    size = 0
    async with aiofiles.open(destination, "wb") as out_file:
        while True:
            chunk = await upload_file.read(1024 * 1024)
            if not chunk:
                break
            size += len(chunk)
            await out_file.write(chunk)
    await upload_file.close()
    return size


async def store_upload(upload: UploadFile, operation: OperationKind, parameters: Dict[str, Any]) -> JobRequest:
    original = os.path.basename(upload.filename or "upload")
    stored = f"{uuid4().hex}-{original}"
    destination = os.path.join(config.upload_dir, stored)
    try:
        size = await save_upload_file(upload, destination)
    except OSError as e:
        logger.exception("Could not save upload %s", original)
        try:
            os.remove(destination)
        except FileNotFoundError:
            pass
        except OSError as cleanup_error:
            logger.warning("Could not remove partial upload %s: %s", destination, cleanup_error)
        raise HTTPException(status_code=500, detail=f"Could not save file: {e}")

    return JobRequest(
        operation=operation,
        input_path=destination,
        original_filename=original,
        stored_filename=stored,
        size_bytes=size,
        mime_type=upload.content_type,
        parameters={k: v for k, v in parameters.items() if v is not None},
    )


def job_response(summary: JobSummary):
    payload = summary.model_dump(mode="json")
    if summary.status == JobStatus.FAILED:
        return JSONResponse(status_code=500, content={"error": summary.error, "job": payload})
    return payload


async def run_job(manager: JobManager, request: JobRequest):
    try:
        summary = await manager.submit(request)
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    return job_response(summary)


def require_upload(upload: Optional[UploadFile], kind: str) -> UploadFile:
    if upload is None or not upload.filename:
        raise HTTPException(status_code=400, detail=f"No {kind} file uploaded")
    return upload


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error("Server error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": f"Internal server error: {exc}"})


@app.get("/")
def root():
    return {"message": "Video Convert API is running"}


@app.get("/api/test-ffmpeg")
def check_ffmpeg(cfg: AppConfig = Depends(get_config)):
    report = {"message": "FFmpeg test completed"}
    for name, configured in (("ffmpeg", cfg.ffmpeg_path), ("ffprobe", cfg.ffprobe_path)):
        resolved = shutil.which(configured)
        logger.info("%s: configured %s, resolved %s", name, configured, resolved)
        report[name] = {"configured": configured, "resolved": resolved, "exists": resolved is not None}
    return report


@app.post("/api/video/metadata")
async def extract_metadata(
    video: Optional[UploadFile] = File(None),
    manager: JobManager = Depends(get_job_manager),
):
    video = require_upload(video, "video")
    request = await store_upload(video, OperationKind.METADATA_EXTRACTION, {})
    return await run_job(manager, request)


@app.post("/api/video/save-metadata")
async def save_metadata(
    payload: Dict[str, Any] = Body(...),
    manager: JobManager = Depends(get_job_manager),
):
    try:
        return await manager.save_metadata(payload.get("filename"), payload.get("metadata"), payload.get("id"))
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (OSError, StorageError) as e:
        logger.error("Error saving metadata: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save metadata file")


@app.post("/api/video/extract-frames")
async def extract_frames(
    video: Optional[UploadFile] = File(None),
    mode: Optional[str] = Form(None),
    frame_count: Optional[str] = Form(None, alias="frameCount"),
    confirm_all: Optional[str] = Form(None, alias="confirmAll"),
    preserve_metadata: Optional[str] = Form(None, alias="preserveMetadata"),
    manager: JobManager = Depends(get_job_manager),
):
    video = require_upload(video, "video")
    request = await store_upload(video, OperationKind.FRAME_EXTRACTION, {
        "mode": mode,
        "frame_count": frame_count,
        "confirm_all": confirm_all,
        "preserve_metadata": preserve_metadata,
    })
    return await run_job(manager, request)


@app.post("/api/video/trim")
async def trim_video(
    video: Optional[UploadFile] = File(None),
    start_time: Optional[str] = Form(None, alias="startTime"),
    end_time: Optional[str] = Form(None, alias="endTime"),
    preserve_metadata: Optional[str] = Form(None, alias="preserveMetadata"),
    manager: JobManager = Depends(get_job_manager),
):
    video = require_upload(video, "video")
    request = await store_upload(video, OperationKind.TRIM, {
        "start": start_time,
        "end": end_time,
        "preserve_metadata": preserve_metadata,
    })
    return await run_job(manager, request)


@app.post("/api/360image/process")
async def process_image(
    image: Optional[UploadFile] = File(None),
    action: Optional[str] = Form(None),
    preserve_metadata: Optional[str] = Form(None, alias="preserveMetadata"),
    manager: JobManager = Depends(get_job_manager),
):
    image = require_upload(image, "image")
    request = await store_upload(image, OperationKind.IMAGE_PROCESSING, {
        "action": action,
        "preserve_metadata": preserve_metadata,
    })
    return await run_job(manager, request)


@app.post("/api/360image/cube-map")
async def convert_cube_map(
    images: Optional[List[UploadFile]] = File(None),
    manager: JobManager = Depends(get_job_manager),
):
    uploads = [upload for upload in (images or []) if upload.filename]
    if not uploads:
        raise HTTPException(status_code=400, detail="No images uploaded")

    # one upload on disk at a time; submit removes it whatever the outcome
    results = []
    for upload in uploads:
        request = await store_upload(upload, OperationKind.CUBE_MAP_CONVERSION, {})
        try:
            results.append(await manager.submit(request))
        except InvalidInput as e:
            raise HTTPException(status_code=400, detail=str(e))

    payload = {
        "message": "Cube maps generated successfully",
        "results": [summary.model_dump(mode="json") for summary in results],
    }
    failed = [summary for summary in results if summary.status == JobStatus.FAILED]
    if failed:
        payload["message"] = f"{len(failed)} of {len(results)} cube maps failed"
        return JSONResponse(status_code=500, content={"error": failed[0].error, **payload})
    return payload


# --- history ---

@app.get("/api/history")
def get_history(history: HistoryService = Depends(get_history_service)):
    try:
        return history.get_history()
    except StorageError as e:
        logger.error("Error fetching history: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch history")


@app.get("/api/history/{job_id}")
def get_job_detail(job_id: str, history: HistoryService = Depends(get_history_service)):
    try:
        return history.get_job_detail(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except StorageError as e:
        logger.error("Error fetching job %s: %s", job_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch job details")


@app.get("/api/history/{job_id}/frames")
def get_artifacts(job_id: str, history: HistoryService = Depends(get_history_service)):
    try:
        return history.get_artifacts(job_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except StorageError as e:
        logger.error("Error fetching artifacts for %s: %s", job_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch frames")


# --- settings ---

@app.get("/api/settings")
def list_settings(db: Store = Depends(get_store)):
    try:
        return db.list_settings()
    except StorageError as e:
        logger.error("Error loading settings: %s", e)
        raise HTTPException(status_code=500, detail="Failed to load settings")


@app.get("/api/settings/{key}")
def get_setting(key: str, db: Store = Depends(get_store)):
    try:
        value = db.get_setting(key)
    except StorageError as e:
        logger.error("Error loading setting %s: %s", key, e)
        raise HTTPException(status_code=500, detail="Failed to load setting")
    if value is None:
        raise HTTPException(status_code=404, detail="Setting not found")
    return {"key": key, "value": value}


@app.put("/api/settings")
def update_settings(payload: Dict[str, Any] = Body(...), db: Store = Depends(get_store)):
    settings = payload.get("settings")
    if not isinstance(settings, dict) or not settings:
        raise HTTPException(status_code=400, detail="Settings object is required")
    try:
        db.set_settings({str(k): str(v) for k, v in settings.items()})
        return {"message": "Settings saved successfully", "settings": db.list_settings()}
    except StorageError as e:
        logger.error("Error saving settings: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save settings")


# --- browsing ---

@app.get("/api/browse")
@app.get("/api/browse/{directory:path}")
def browse(directory: str = ""):
    root = os.path.realpath(config.output_dir)
    full_path = os.path.realpath(os.path.join(root, directory))
    if full_path != root and not full_path.startswith(root + os.sep):
        raise HTTPException(status_code=403, detail="Access denied")
    if not os.path.isdir(full_path):
        raise HTTPException(status_code=404, detail="Directory not found")

    items = []
    for entry in sorted(os.scandir(full_path), key=lambda e: e.name):
        item_path = os.path.relpath(entry.path, root).replace(os.sep, "/")
        is_file = entry.is_file()
        items.append({
            "name": entry.name,
            "type": "file" if is_file else "directory",
            "path": item_path,
            "url": f"{config.public_base_url}/files/{item_path}" if is_file else None,
            "size": entry.stat().st_size if is_file else None,
        })

    return {
        "directory": directory,
        "parent": os.path.dirname(directory.rstrip("/")) if directory else None,
        "items": items,
    }
