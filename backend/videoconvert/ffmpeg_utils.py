# backend/videoconvert/ffmpeg_utils.py
import asyncio
import json
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .config import AppConfig
from .errors import ToolError
from .schemas import CubeMapParams, FramePlan, TrimParams

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.png"
TRIM_FILENAME = "trimmed.mp4"

ToolParams = Union[FramePlan, TrimParams, CubeMapParams]


@dataclass
class ProbeResult:
    duration: Optional[float] = None
    frame_rate: Optional[float] = None
    frame_count: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    format_name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_frames(self) -> Optional[int]:
        """Frames in the source: the container's count, else duration x rate."""
        if self.frame_count is not None:
            return self.frame_count
        if self.duration is not None and self.frame_rate:
            return int(math.floor(self.duration * self.frame_rate))
        return None


async def run_cmd(cmd: Sequence[str]) -> Tuple[int, str, str]:
    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ToolError(f"Could not start {cmd[0]}: {exc}") from exc
    stdout, stderr = await proc.communicate()
    return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """'30000/1001' -> 29.97; '0/0' and garbage -> None."""
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            num, den = float(num), float(den)
            return num / den if den else None
        rate = float(value)
    except ValueError:
        return None
    return rate if rate > 0 else None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(text: str) -> ProbeResult:
    try:
        data = json.loads(text or "{}")
    except json.JSONDecodeError as exc:
        raise ToolError(f"ffprobe returned unreadable output: {exc}") from exc

    fmt = data.get("format") or {}
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), {})

    duration = _as_float(fmt.get("duration"))
    if duration is None:
        duration = _as_float(video.get("duration"))

    return ProbeResult(
        duration=duration,
        frame_rate=parse_frame_rate(video.get("avg_frame_rate")) or parse_frame_rate(video.get("r_frame_rate")),
        frame_count=_as_int(video.get("nb_frames")),
        width=_as_int(video.get("width")),
        height=_as_int(video.get("height")),
        format_name=fmt.get("format_name"),
        raw=data,
    )


def build_probe_command(ffprobe: str, input_path: str) -> List[str]:
    return [
        ffprobe, "-v", "error",
        "-print_format", "json",
        "-show_format", "-show_streams",
        input_path,
    ]


def build_frame_command(ffmpeg: str, input_path: str, timestamp: float, output_path: str, height: int) -> List[str]:
    # -ss before -i seeks on the input, so a single frame is decoded per call
    return [
        ffmpeg, "-y", "-v", "error",
        "-ss", f"{timestamp:.3f}",
        "-i", input_path,
        "-frames:v", "1",
        "-vf", f"scale=-2:{height}",
        output_path,
    ]


def build_all_frames_command(ffmpeg: str, input_path: str, output_dir: str, height: int) -> List[str]:
    return [
        ffmpeg, "-y", "-v", "error",
        "-i", input_path,
        "-vf", f"scale=-2:{height}",
        os.path.join(output_dir, FRAME_PATTERN),
    ]


def build_trim_command(ffmpeg: str, input_path: str, params: TrimParams, output_path: str) -> List[str]:
    return [
        ffmpeg, "-y", "-v", "error",
        "-ss", f"{params.start:.3f}",
        "-i", input_path,
        "-t", f"{params.duration:.3f}",
        "-map_metadata", "0" if params.preserve_metadata else "-1",
        "-c:v", "libx264", "-preset", "veryfast",
        "-c:a", "aac",
        output_path,
    ]


def frame_filename(ordinal: int) -> str:
    return FRAME_PATTERN % ordinal


def cube_face_filename(ordinal: int, face: str) -> str:
    # ordinal prefix keeps lexicographic order equal to face order
    return f"{ordinal}_{face}.png"


def split_cube_faces(input_path: str, output_dir: str, faces: Sequence[str]) -> List[Path]:
    """Crop square tiles left to right, one per face.

    Tiles have side min(w, h)/4, shrunk when needed so every face fits inside
    the image width.
    """
    try:
        with Image.open(input_path) as image:
            image.load()
            width, height = image.size
            face_size = min(min(width, height) // 4, width // max(len(faces), 1))
            if face_size <= 0:
                raise ToolError(f"Image {os.path.basename(input_path)} is too small for a cube map")

            produced = []
            for index, face in enumerate(faces):
                left = index * face_size
                tile = image.crop((left, 0, left + face_size, face_size))
                target = Path(output_dir) / cube_face_filename(index + 1, face)
                tile.save(target, format="PNG")
                produced.append(target)
            return produced
    except (UnidentifiedImageError, OSError) as exc:
        raise ToolError(f"Could not read image {os.path.basename(input_path)}: {exc}") from exc


class FFmpegTool:
    """ffprobe/ffmpeg for video, Pillow for cube faces."""

    def __init__(self, config: AppConfig):
        self.ffmpeg = config.ffmpeg_path
        self.ffprobe = config.ffprobe_path

    async def probe(self, input_path: str) -> ProbeResult:
        code, out, err = await run_cmd(build_probe_command(self.ffprobe, input_path))
        if code != 0:
            raise ToolError(f"ffprobe failed: {err.strip() or f'exit code {code}'}")
        return parse_probe_output(out)

    async def execute(self, input_path: str, params: ToolParams, output_dir: Path) -> List[Path]:
        if isinstance(params, FramePlan):
            return await self._extract_frames(input_path, params, output_dir)
        if isinstance(params, TrimParams):
            return await self._trim(input_path, params, output_dir)
        if isinstance(params, CubeMapParams):
            return await self._split_cube(input_path, params, output_dir)
        raise ToolError(f"Unsupported tool parameters: {type(params).__name__}")

    async def _extract_frames(self, input_path: str, plan: FramePlan, output_dir: Path) -> List[Path]:
        if plan.timestamps is None:
            await self._check(build_all_frames_command(self.ffmpeg, input_path, str(output_dir), plan.height))
            return sorted(output_dir.glob("frame_*.png"))

        produced = []
        for ordinal, timestamp in enumerate(plan.timestamps, start=1):
            target = output_dir / frame_filename(ordinal)
            await self._check(build_frame_command(self.ffmpeg, input_path, timestamp, str(target), plan.height))
            if not target.exists():
                raise ToolError(f"ffmpeg produced no frame at {timestamp:.3f}s")
            produced.append(target)
        return produced

    async def _trim(self, input_path: str, params: TrimParams, output_dir: Path) -> List[Path]:
        target = output_dir / TRIM_FILENAME
        await self._check(build_trim_command(self.ffmpeg, input_path, params, str(target)))
        if not target.exists():
            raise ToolError("Output file was not created")
        return [target]

    async def _split_cube(self, input_path: str, params: CubeMapParams, output_dir: Path) -> List[Path]:
        return await asyncio.to_thread(split_cube_faces, input_path, str(output_dir), params.faces)

    async def _check(self, cmd: List[str]) -> None:
        code, _, err = await run_cmd(cmd)
        if code != 0:
            raise ToolError(f"{os.path.basename(cmd[0])} failed: {err.strip() or f'exit code {code}'}")
