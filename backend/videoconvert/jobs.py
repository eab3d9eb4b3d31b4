# backend/videoconvert/jobs.py
"""Job lifecycle: validate, register, run the tool once, record artifacts.

``JobManager.submit`` only ever raises ``InvalidInput``. Every other failure is
turned into a failed job and a summary carrying the error message, and the
uploaded input file is removed on every path out.
"""
import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import aiofiles
from pydantic import BaseModel, ValidationError

from .config import AppConfig
from .errors import InvalidInput, StorageError, ToolError
from .ffmpeg_utils import ProbeResult
from .models import JobStatus, OperationKind
from .resolver import browse_url, files_url, resolve_artifact
from .sampling import all_frame_timestamps, count_timestamps, default_frame_count, per_second_timestamps
from .schemas import (
    CubeMapData,
    CubeMapParams,
    FrameExtractionData,
    FrameExtractionParams,
    FramePlan,
    ImageProcessingData,
    ImageProcessingParams,
    JobRequest,
    JobSummary,
    MetadataExtractionData,
    TrimData,
    TrimParams,
)
from .store import Store

logger = logging.getLogger(__name__)

PARAMETER_MODELS = {
    OperationKind.FRAME_EXTRACTION: FrameExtractionParams,
    OperationKind.TRIM: TrimParams,
    OperationKind.IMAGE_PROCESSING: ImageProcessingParams,
    OperationKind.CUBE_MAP_CONVERSION: CubeMapParams,
}

FAILURE_PREFIX = {
    OperationKind.METADATA_EXTRACTION: "Error extracting metadata",
    OperationKind.FRAME_EXTRACTION: "Error extracting frames",
    OperationKind.TRIM: "Error trimming video",
    OperationKind.IMAGE_PROCESSING: "Error processing image",
    OperationKind.CUBE_MAP_CONVERSION: "Error generating cube map",
}


@dataclass
class Outcome:
    files: List[Path]
    timestamps: List[Optional[float]]  # by ordinal, aligned with files sorted by name
    metadata: BaseModel
    output_location: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)


def parse_parameters(operation: OperationKind, parameters: Dict[str, Any]) -> Optional[BaseModel]:
    model = PARAMETER_MODELS.get(operation)
    if model is None:
        return None
    try:
        return model.model_validate(parameters)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            where = ".".join(str(part) for part in error["loc"])
            message = error["msg"].replace("Value error, ", "")
            problems.append(f"{where}: {message}" if where else message)
        raise InvalidInput("Invalid parameters: " + "; ".join(problems)) from exc


def initial_metadata(operation: OperationKind, params: Optional[BaseModel]) -> BaseModel:
    if operation is OperationKind.FRAME_EXTRACTION:
        return FrameExtractionData(
            mode=params.mode,
            requested_count=params.frame_count,
            preserve_metadata=params.preserve_metadata,
        )
    if operation is OperationKind.TRIM:
        return TrimData(start=params.start, end=params.end, preserve_metadata=params.preserve_metadata)
    if operation is OperationKind.IMAGE_PROCESSING:
        return ImageProcessingData(action=params.action, preserve_metadata=params.preserve_metadata)
    if operation is OperationKind.CUBE_MAP_CONVERSION:
        return CubeMapData()
    return MetadataExtractionData()


def output_dir_name(operation: OperationKind, token: str) -> str:
    return f"{operation.value}_{token}"


def plan_frames(params: FrameExtractionParams, probe: ProbeResult, height: int) -> FramePlan:
    duration = probe.duration or 0.0

    if params.mode == "all":
        if not probe.frame_rate:
            raise ToolError("Could not determine the frame rate of the source")
        if probe.total_frames == 0:
            return FramePlan(mode="all", timestamps=[], height=height)
        return FramePlan(mode="all", timestamps=None, height=height)

    if params.mode == "per_second":
        timestamps = per_second_timestamps(duration, probe.frame_rate)
        return FramePlan(mode="per_second", timestamps=timestamps, height=height)

    requested = params.frame_count or default_frame_count(duration)
    timestamps = count_timestamps(duration, requested, probe.total_frames)
    return FramePlan(mode="count", timestamps=timestamps, height=height)


def failure_message(operation: OperationKind, exc: Exception) -> str:
    if isinstance(exc, ToolError):
        detail = str(exc)
    elif isinstance(exc, OSError):
        detail = f"file system error: {exc.strerror or exc}"
    else:
        detail = f"unexpected error: {exc}"
    return f"{FAILURE_PREFIX[operation]}: {detail}"


class JobManager:
    """Runs one processing request end to end.

    ``tool`` must provide ``async probe(path) -> ProbeResult`` and
    ``async execute(path, params, output_dir) -> list[Path]``.
    """

    def __init__(self, store: Store, tool, config: AppConfig):
        self.store = store
        self.tool = tool
        self.config = config

    async def submit(self, request: JobRequest) -> JobSummary:
        operation = request.operation
        try:
            if not request.input_path or not os.path.exists(request.input_path):
                raise InvalidInput("No file uploaded")
            params = parse_parameters(operation, request.parameters)
        except InvalidInput as exc:
            logger.info("Rejected %s request for %s: %s", operation.value, request.original_filename, exc)
            await self._discard_input(request.input_path)
            raise

        metadata = initial_metadata(operation, params)
        job_id = await self._register(request, metadata)
        token = job_id or uuid4().hex
        output_dir = self.config.output_dir / output_dir_name(operation, token)

        try:
            outcome = await self._run(operation, request.input_path, params, metadata, output_dir)
        except Exception as exc:
            message = failure_message(operation, exc)
            logger.error(
                "Job %s (%s) failed: %s", token, operation.value, message,
                exc_info=not isinstance(exc, ToolError),
            )
            await self._safe_update(job_id, status=JobStatus.FAILED, error_message=message)
            return JobSummary(
                id=job_id,
                operation=operation,
                status=JobStatus.FAILED,
                original_filename=request.original_filename,
                additional_data=metadata,
                error=message,
            )
        finally:
            await self._discard_input(request.input_path)

        return await self._complete(job_id, request, outcome)

    async def save_metadata(self, filename: str, metadata: Any, job_id: Optional[str] = None) -> Dict[str, Any]:
        """Write a probe document next to the outputs and link it to its job."""
        if not filename or metadata is None:
            raise InvalidInput("Filename and metadata are required")

        json_filename = f"{os.path.basename(filename)}_metadata.json"
        json_path = self.config.output_dir / json_filename
        await asyncio.to_thread(os.makedirs, self.config.output_dir, exist_ok=True)
        async with aiofiles.open(json_path, "w") as out_file:
            await out_file.write(json.dumps(metadata, indent=2))

        if job_id:
            job = await asyncio.to_thread(self.store.get_job, job_id)
            if job is None:
                logger.warning("Saved %s for unknown job %s", json_filename, job_id)
            elif job.operation_type is not OperationKind.METADATA_EXTRACTION:
                # other kinds keep their own metadata shape, only the file is linked
                await self._safe_update(job_id, metadata_path=str(json_path))
            else:
                data = job.additional_data
                if not isinstance(data, MetadataExtractionData):
                    data = MetadataExtractionData()
                data = data.model_copy(update={"metadata_saved": True, "json_filename": json_filename})
                await self._safe_update(job_id, metadata_path=str(json_path), additional_data=data)

        url = files_url(self.config.public_base_url, json_filename)
        return {
            "message": "Metadata saved successfully",
            "filename": json_filename,
            "path": str(json_path),
            "downloadUrl": url,
            "viewUrl": url,
        }

    # --- steps ---

    async def _register(self, request: JobRequest, metadata: BaseModel) -> Optional[str]:
        try:
            job_id = await asyncio.to_thread(
                self.store.create_job,
                filename=request.stored_filename,
                original_name=request.original_filename,
                operation_type=request.operation,
                input_path=request.input_path,
                file_size=request.size_bytes,
                mime_type=request.mime_type,
                additional_data=metadata,
            )
        except StorageError as exc:
            logger.warning(
                "Running %s for %s degraded, without a job record: %s",
                request.operation.value, request.original_filename, exc,
            )
            return None
        logger.info("Job %s created: %s of %s", job_id, request.operation.value, request.original_filename)
        return job_id

    async def _run(self, operation, input_path, params, metadata, output_dir: Path) -> Outcome:
        if operation is OperationKind.METADATA_EXTRACTION:
            return await self._extract_metadata(input_path, metadata)
        if operation is OperationKind.FRAME_EXTRACTION:
            return await self._extract_frames(input_path, params, metadata, output_dir)
        if operation is OperationKind.TRIM:
            return await self._trim(input_path, params, metadata, output_dir)
        if operation is OperationKind.IMAGE_PROCESSING:
            return await self._process_image(input_path, params, metadata)
        return await self._convert_cube_map(input_path, params, metadata, output_dir)

    async def _extract_metadata(self, input_path: str, metadata: MetadataExtractionData) -> Outcome:
        probe = await self.tool.probe(input_path)
        metadata = metadata.model_copy(update={"duration": probe.duration, "metadata_extracted": True})
        return Outcome(files=[], timestamps=[], metadata=metadata, result=probe.raw)

    async def _extract_frames(self, input_path, params: FrameExtractionParams, metadata, output_dir: Path) -> Outcome:
        probe = await self.tool.probe(input_path)
        if probe.duration is None:
            raise ToolError("Could not determine the duration of the source")

        plan = plan_frames(params, probe, self.config.frame_height)
        await self._make_dir(output_dir)

        if plan.timestamps == []:
            logger.info("Nothing to sample from a %.3fs source, completing with no frames", probe.duration)
            files = []
        else:
            files = await self.tool.execute(input_path, plan, output_dir)

        if plan.timestamps is None:
            timestamps = all_frame_timestamps(len(files), probe.frame_rate)
        else:
            timestamps = plan.timestamps

        metadata = metadata.model_copy(update={
            "requested_count": params.frame_count or (
                default_frame_count(probe.duration) if params.mode == "count" else None
            ),
            "frames_dir_name": output_dir.name,
            "frame_count": len(files),
            "duration": probe.duration,
            "frame_rate": probe.frame_rate,
        })
        return Outcome(
            files=files,
            timestamps=timestamps,
            metadata=metadata,
            output_location=str(output_dir),
            result={"frame_count": len(files), "duration": probe.duration, "mode": params.mode},
        )

    async def _trim(self, input_path, params: TrimParams, metadata, output_dir: Path) -> Outcome:
        await self._make_dir(output_dir)
        files = await self.tool.execute(input_path, params, output_dir)
        if not files:
            raise ToolError("Output file was not created")
        size = await asyncio.to_thread(os.path.getsize, files[0])
        metadata = metadata.model_copy(update={"output_filename": files[0].name, "file_size": size})
        return Outcome(
            files=files,
            timestamps=[params.start],
            metadata=metadata,
            output_location=str(output_dir),
            result={"file_size": size, "duration": params.duration},
        )

    async def _process_image(self, input_path, params: ImageProcessingParams, metadata) -> Outcome:
        probe = await self.tool.probe(input_path)
        metadata = metadata.model_copy(update={
            "width": probe.width,
            "height": probe.height,
            "format_name": probe.format_name,
        })
        return Outcome(
            files=[],
            timestamps=[],
            metadata=metadata,
            result={"action": params.action, "width": probe.width, "height": probe.height},
        )

    async def _convert_cube_map(self, input_path, params: CubeMapParams, metadata, output_dir: Path) -> Outcome:
        await self._make_dir(output_dir)
        files = await self.tool.execute(input_path, params, output_dir)
        names = [path.name for path in sorted(files, key=lambda p: p.name)]
        metadata = metadata.model_copy(update={"cube_map_dir_name": output_dir.name, "faces": names})
        return Outcome(
            files=files,
            timestamps=[None] * len(files),
            metadata=metadata,
            output_location=str(output_dir),
            result={"faces": names},
        )

    async def _complete(self, job_id: Optional[str], request: JobRequest, outcome: Outcome) -> JobSummary:
        base_url = self.config.public_base_url
        files = sorted(outcome.files, key=lambda p: p.name)

        artifacts = []
        for ordinal, path in enumerate(files, start=1):
            timestamp = outcome.timestamps[ordinal - 1] if ordinal <= len(outcome.timestamps) else None
            artifact_id = None
            if job_id is not None:
                try:
                    artifact_id = await asyncio.to_thread(
                        self.store.add_artifact, job_id, str(path), ordinal, timestamp
                    )
                except StorageError as exc:
                    logger.error("Artifact %d of job %s not recorded: %s", ordinal, job_id, exc)
            artifacts.append(resolve_artifact(
                outcome.output_location, str(path), base_url,
                ordinal=ordinal, timestamp=timestamp, job_id=job_id, artifact_id=artifact_id,
            ))

        await self._safe_update(
            job_id,
            status=JobStatus.COMPLETED,
            output_path=outcome.output_location,
            additional_data=outcome.metadata,
        )
        logger.info(
            "Job %s completed: %s of %s, %d artifacts",
            job_id, request.operation.value, request.original_filename, len(artifacts),
        )

        return JobSummary(
            id=job_id,
            operation=request.operation,
            status=JobStatus.COMPLETED,
            original_filename=request.original_filename,
            artifact_count=len(artifacts),
            artifacts=artifacts,
            output_location=outcome.output_location,
            browse_url=browse_url(outcome.output_location, base_url),
            additional_data=outcome.metadata,
            result=outcome.result,
        )

    # --- helpers ---

    async def _safe_update(self, job_id: Optional[str], **fields) -> None:
        if job_id is None:
            logger.warning("No job record to update (degraded run): %s", sorted(fields))
            return
        try:
            changed = await asyncio.to_thread(self.store.update_job, job_id, **fields)
        except StorageError as exc:
            logger.error("Could not update job %s: %s", job_id, exc)
            return
        if not changed:
            logger.warning("Job %s disappeared before it could be updated", job_id)

    @staticmethod
    async def _make_dir(path: Path) -> None:
        await asyncio.to_thread(os.makedirs, path, exist_ok=True)

    @staticmethod
    async def _discard_input(path: Optional[str]) -> None:
        if not path:
            return
        try:
            await asyncio.to_thread(os.remove, path)
            logger.debug("Removed upload %s", path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove upload %s: %s", path, exc)
