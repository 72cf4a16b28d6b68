# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for the clip pipeline:
#  - POST /projects            -> create a project from scenes (optionally frames)
#  - GET  /projects/{id}       -> read a project record
#  - POST /generate-frames     -> keyframes per scene (Runware imageInference)
#  - POST /generate-clips      -> submit one video job per scene, store clip map
#  - POST /check-clips-status  -> refresh pending clips, write only on change
#  - GET  /files/{key}         -> stream local or R2 objects
#  - GET  /debug/config        -> runtime env (hide in prod)
#  Every response carries "success"; failures are {"success": false, "error": ...}
#  Persistence:
#    * SQLModel + SQLite (pipeline.db) for project records
# ------------------------------------------------------------------------------------

import logging
import os
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import storage
from errors import PipelineError
from pipeline import PipelineService
from project_store import SqlProjectStore
from settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pipeline.api")

# ---------------- Wiring ----------------
store = SqlProjectStore(settings.database_url)
service = PipelineService(store)

# ------------- FastAPI app --------------
app = FastAPI(title="Clip Pipeline API", version="0.1.0")

# 🔴 In prod, tighten this list to your domains
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def _on_startup():
    service.store.init_db()

# ---------- Error envelope ----------
@app.exception_handler(PipelineError)
async def _pipeline_error(request: Request, exc: PipelineError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})

@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc.errors())})

@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})

@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

# ---------- Schemas ----------
class ProjectRef(BaseModel):
    project_id: Optional[str] = Field(None, description="Project id")

class CreateProjectRequest(BaseModel):
    scenes: Dict[str, Dict[str, Any]] = Field(..., description="Scenes keyed by scene number")
    frames: Optional[Dict[str, Dict[str, str]]] = Field(None, description="Ready-made first/last frame URLs")

# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True, "storage": settings.storage}

# ---------- Projects ----------
@app.post("/projects")
def create_project(payload: CreateProjectRequest):
    project = service.create_project(payload.scenes, payload.frames)
    return {"success": True, "project": project.to_dict()}

@app.get("/projects/{project_id}")
def get_project(project_id: str):
    return {"success": True, "project": service.get_project(project_id).to_dict()}

# ---------- Pipeline stages ----------
@app.post("/generate-frames")
async def generate_frames(payload: ProjectRef):
    return await service.generate_frames(payload.project_id)

@app.post("/generate-clips")
async def generate_clips(payload: ProjectRef):
    # Polling is left to the caller (/check-clips-status) so this request stays short
    return await service.submit_clips(payload.project_id)

@app.post("/check-clips-status")
async def check_clips_status(payload: ProjectRef):
    return await service.refresh_clips(payload.project_id)

# ---------- Streaming route ----------
@app.get("/files/{key:path}")
def stream_file(key: str):
    if key.startswith("local/"):
        local_name = key.split("/", 1)[1]
        try:
            file_path = storage.local_path(local_name)
        except ValueError:
            raise HTTPException(status_code=404, detail="file not found")
        if not os.path.isfile(file_path):
            raise HTTPException(status_code=404, detail="file not found")
        return FileResponse(file_path)

    if storage.use_r2():
        try:
            body, content_type = storage.get_object_stream(key)
        except (BotoCoreError, ClientError):
            raise HTTPException(status_code=404, detail="object not found")

        def iter_chunks():
            for chunk in iter(lambda: body.read(1024 * 1024), b""):
                yield chunk

        return StreamingResponse(iter_chunks(), media_type=content_type or "application/octet-stream")

    raise HTTPException(status_code=404, detail="file not found")

# ---------- Index ----------
@app.get("/")
def index():
    return {"service": "clip-pipeline-api", "storage": settings.storage, "public_base": settings.public_base_url}

# ---------- Debug (hide in prod) ----------
if settings.debug:
    @app.get("/debug/config")
    def debug_config():
        return {
            "STORAGE": settings.storage,
            "R2_ENDPOINT_URL": settings.r2_endpoint_url,
            "R2_PUBLIC_BASE": settings.r2_public_base,
            "R2_BUCKET": settings.r2_bucket,
            "RUNWARE_API_BASE": settings.runware_api_base,
            "RUNWARE_VIDEO_MODEL": settings.runware_video_model,
            "RUNWARE_STATUS_TASK_TYPE": settings.runware_status_task_type,
            "POLL_INTERVAL_SEC": settings.poll_interval_sec,
            "POLL_MAX_WAIT_SEC": settings.poll_max_wait_sec,
            "DB_URL": settings.database_url,
        }
