# backend/videoconvert/config.py
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

load_dotenv()


@dataclass
class AppConfig:
    """Runtime configuration, read once from the environment."""

    storage_dir: Path
    database_url: str
    public_base_url: str = "http://localhost:5001"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    frame_height: int = 720
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def upload_dir(self) -> Path:
        return self.storage_dir / "uploads"

    @property
    def output_dir(self) -> Path:
        return self.storage_dir / "output"

    def ensure_dirs(self) -> None:
        os.makedirs(self.upload_dir, exist_ok=True)
        os.makedirs(self.output_dir, exist_ok=True)

    @classmethod
    def from_env(cls) -> "AppConfig":
        storage_dir = Path(os.environ.get("STORAGE_DIR", os.path.join(BASE_DIR, "storage")))
        database_url = os.environ.get(
            "DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'videoconvert.db')}"
        )
        return cls(
            storage_dir=storage_dir,
            database_url=database_url,
            public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://localhost:5001").rstrip("/"),
            ffmpeg_path=os.environ.get("FFMPEG_PATH", "ffmpeg"),
            ffprobe_path=os.environ.get("FFPROBE_PATH", "ffprobe"),
            frame_height=int(os.environ.get("FRAME_HEIGHT", "720")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            cors_origins=json.loads(os.environ.get("CORS_ORIGINS", '["*"]')),
        )


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the package logger."""
    logger = logging.getLogger("videoconvert")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(handler)

    return logger
