# backend/videoconvert/models.py
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    METADATA_EXTRACTION = "metadata_extraction"
    FRAME_EXTRACTION = "frame_extraction"
    TRIM = "trim"
    IMAGE_PROCESSING = "image_processing"
    CUBE_MAP_CONVERSION = "cube_map_conversion"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


class Job(SQLModel, table=True):
    __tablename__ = "video_history"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, nullable=False)
    filename: str = Field(nullable=False)
    original_name: str = Field(nullable=False)
    file_size: Optional[int] = Field(default=None)
    mime_type: Optional[str] = Field(default=None)
    operation_type: str = Field(nullable=False, index=True)
    status: str = Field(default=JobStatus.PROCESSING.value, nullable=False)  # processing | completed | failed
    input_path: Optional[str] = Field(default=None)
    output_path: Optional[str] = Field(default=None)
    metadata_path: Optional[str] = Field(default=None)
    additional_data: Optional[str] = Field(default=None)  # tagged JSON, see schemas.JobMetadata
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    completed_at: Optional[datetime] = Field(default=None)


class Artifact(SQLModel, table=True):
    __tablename__ = "extracted_frames"
    __table_args__ = (UniqueConstraint("job_id", "frame_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="video_history.id", index=True, nullable=False)
    frame_path: str = Field(nullable=False)
    frame_number: int = Field(nullable=False)  # 1-based ordinal within the job
    timestamp: Optional[float] = Field(default=None)  # offset into the source, seconds
    created_at: datetime = Field(default_factory=utcnow)


class Setting(SQLModel, table=True):
    __tablename__ = "settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(unique=True, index=True, nullable=False)
    value: str = Field(nullable=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


DEFAULT_SETTINGS = {
    "theme_primary_color": "#00ff00",
    "theme_secondary_color": "#00cc00",
    "theme_background_color": "#1a1a1a",
    "theme_card_background": "#2a2a2a",
    "theme_border_color": "#00ff00",
    "theme_text_color": "#00ff00",
    "theme_error_color": "#ff0000",
    "theme_success_color": "#00ff00",
    "theme_warning_color": "#ffff00",
    "theme_name": "Matrix Green",
}
