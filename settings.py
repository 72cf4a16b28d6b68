# settings.py
from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()

class Settings(BaseModel):
    # Runware provider
    runware_api_key: str = Field(default=os.getenv("RUNWARE_API_KEY", ""))
    runware_api_base: str = Field(default=os.getenv("RUNWARE_API_BASE", "https://api.runware.ai/v1"))
    runware_video_model: str = Field(default=os.getenv("RUNWARE_VIDEO_MODEL", "google:3@3"))
    runware_image_model: str = Field(default=os.getenv("RUNWARE_IMAGE_MODEL", "gemini-flash-image-2.5"))
    runware_status_task_type: str = Field(default=os.getenv("RUNWARE_STATUS_TASK_TYPE", "getResponse"))
    runware_timeout_sec: float = Field(default=float(os.getenv("RUNWARE_TIMEOUT_SEC", "60")))
    # bounded fast-path wait inside a single submission
    runware_submit_wait_sec: float = Field(default=float(os.getenv("RUNWARE_SUBMIT_WAIT_SEC", "20")))
    runware_submit_probe_sec: float = Field(default=float(os.getenv("RUNWARE_SUBMIT_PROBE_SEC", "2")))
    runware_submit_attempts: int = Field(default=int(os.getenv("RUNWARE_SUBMIT_ATTEMPTS", "3")))

    # Clip output shape
    clip_duration_sec: int = Field(default=int(os.getenv("CLIP_DURATION_SEC", "4")))
    clip_min_duration_sec: int = Field(default=int(os.getenv("CLIP_MIN_DURATION_SEC", "2")))
    clip_max_duration_sec: int = Field(default=int(os.getenv("CLIP_MAX_DURATION_SEC", "8")))
    clip_width: int = Field(default=int(os.getenv("CLIP_WIDTH", "1280")))
    clip_height: int = Field(default=int(os.getenv("CLIP_HEIGHT", "720")))
    clip_fps: int = Field(default=int(os.getenv("CLIP_FPS", "24")))
    frame_width: int = Field(default=int(os.getenv("FRAME_WIDTH", "576")))
    frame_height: int = Field(default=int(os.getenv("FRAME_HEIGHT", "1024")))

    # Polling
    poll_interval_sec: float = Field(default=float(os.getenv("POLL_INTERVAL_SEC", "10")))
    poll_max_wait_sec: float = Field(default=float(os.getenv("POLL_MAX_WAIT_SEC", "1800")))
    store_cas_attempts: int = Field(default=int(os.getenv("STORE_CAS_ATTEMPTS", "3")))

    # Persistence / storage
    database_url: str = Field(default=os.getenv("DATABASE_URL", "sqlite:///./pipeline.db"))
    storage: str = Field(default=os.getenv("STORAGE", "local").lower())  # "r2" or "local"
    local_dir: str = Field(default=os.getenv("LOCAL_DIR", os.path.join(os.getcwd(), "local_renders")))
    r2_access_key_id: str = Field(default=os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(default=os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_endpoint_url: str = Field(default=os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default=os.getenv("R2_BUCKET", "clip-pipeline"))
    r2_public_base: str = Field(default=os.getenv("R2_PUBLIC_BASE", ""))

    # Service
    public_base_url: str = Field(default=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))
    debug: bool = Field(default=os.getenv("DEBUG", "true").lower() in {"1", "true", "yes"})
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO").upper())

settings = Settings()
