# backend/videoconvert/schemas.py
import logging
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from .models import JobStatus, OperationKind

logger = logging.getLogger(__name__)

FrameMode = Literal["count", "per_second", "all"]

CUBE_FACES = ("front", "back", "left", "right", "top", "bottom")


# --- structured job metadata, one shape per operation kind ---

class MetadataExtractionData(BaseModel):
    kind: Literal["metadata_extraction"] = "metadata_extraction"
    duration: Optional[float] = None
    metadata_extracted: bool = False
    metadata_saved: bool = False
    json_filename: Optional[str] = None


class FrameExtractionData(BaseModel):
    kind: Literal["frame_extraction"] = "frame_extraction"
    mode: FrameMode = "count"
    requested_count: Optional[int] = None
    preserve_metadata: bool = False
    frames_dir_name: Optional[str] = None
    frame_count: Optional[int] = None
    duration: Optional[float] = None
    frame_rate: Optional[float] = None


class TrimData(BaseModel):
    kind: Literal["trim"] = "trim"
    start: float
    end: float
    preserve_metadata: bool = False
    output_filename: Optional[str] = None
    file_size: Optional[int] = None


class ImageProcessingData(BaseModel):
    kind: Literal["image_processing"] = "image_processing"
    action: Optional[str] = None
    preserve_metadata: bool = False
    width: Optional[int] = None
    height: Optional[int] = None
    format_name: Optional[str] = None


class CubeMapData(BaseModel):
    kind: Literal["cube_map_conversion"] = "cube_map_conversion"
    cube_map_dir_name: Optional[str] = None
    faces: List[str] = Field(default_factory=list)


JobMetadata = Annotated[
    Union[MetadataExtractionData, FrameExtractionData, TrimData, ImageProcessingData, CubeMapData],
    Field(discriminator="kind"),
]

_metadata_adapter = TypeAdapter(JobMetadata)


def dump_metadata(data: Optional[BaseModel]) -> Optional[str]:
    if data is None:
        return None
    return data.model_dump_json()


def load_metadata(raw: Optional[str]):
    """Parse a stored metadata blob. Unreadable blobs come back as None."""
    if not raw:
        return None
    try:
        return _metadata_adapter.validate_json(raw)
    except ValidationError:
        logger.warning("Ignoring unreadable job metadata: %.200s", raw)
        return None


# --- operation parameters ---

class FrameExtractionParams(BaseModel):
    mode: FrameMode = "count"
    frame_count: Optional[int] = Field(default=None, ge=1)
    confirm_all: bool = False
    preserve_metadata: bool = False

    @model_validator(mode="after")
    def _confirm_all_frames(self):
        if self.mode == "all" and not self.confirm_all:
            raise ValueError(
                "extracting every frame is resource intensive; resubmit with confirm_all=true"
            )
        return self


class TrimParams(BaseModel):
    start: float = Field(ge=0, allow_inf_nan=False)
    end: float = Field(allow_inf_nan=False)
    preserve_metadata: bool = False

    @model_validator(mode="after")
    def _start_before_end(self):
        if self.start >= self.end:
            raise ValueError("start time must be less than end time")
        return self

    @property
    def duration(self) -> float:
        return self.end - self.start


class ImageProcessingParams(BaseModel):
    action: Optional[str] = None
    preserve_metadata: bool = False


class CubeMapParams(BaseModel):
    faces: List[str] = Field(default_factory=lambda: list(CUBE_FACES))


class FramePlan(BaseModel):
    """What the tool is asked to sample. ``timestamps`` of None means every frame."""

    mode: FrameMode
    timestamps: Optional[List[float]] = None
    height: int = 720


# --- read models ---

class JobRequest(BaseModel):
    operation: OperationKind
    input_path: Optional[str] = None
    original_filename: str
    stored_filename: str
    size_bytes: Optional[int] = None
    mime_type: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class JobRead(BaseModel):
    id: str
    filename: str
    original_name: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    operation_type: OperationKind
    status: JobStatus
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    metadata_path: Optional[str] = None
    additional_data: Optional[JobMetadata] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    artifact_count: int = 0


class ArtifactRead(BaseModel):
    id: int
    job_id: str
    frame_path: str
    frame_number: int
    timestamp: Optional[float] = None
    created_at: datetime


class ArtifactLocation(BaseModel):
    id: Optional[int] = None
    job_id: Optional[str] = None
    ordinal: int
    timestamp: Optional[float] = None
    path: str
    file_name: str
    directory: str
    url: str


class JobSummary(BaseModel):
    id: Optional[str] = None
    operation: OperationKind
    status: JobStatus
    original_filename: str
    artifact_count: int = 0
    artifacts: List[ArtifactLocation] = Field(default_factory=list)
    output_location: Optional[str] = None
    browse_url: Optional[str] = None
    additional_data: Optional[JobMetadata] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class JobDetail(JobRead):
    artifacts: List[ArtifactLocation] = Field(default_factory=list)
    browse_url: Optional[str] = None
