import asyncio
import os
import tempfile
from uuid import uuid4

# module-level config in videoconvert.main reads these at import
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="videoconvert-tests-"))
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(os.environ["STORAGE_DIR"], "default.db"))

import pytest
from PIL import Image

from videoconvert.config import AppConfig
from videoconvert.db import init_db, make_engine
from videoconvert.errors import ToolError
from videoconvert.ffmpeg_utils import TRIM_FILENAME, FFmpegTool, ProbeResult, frame_filename
from videoconvert.history import HistoryService
from videoconvert.jobs import JobManager
from videoconvert.models import OperationKind
from videoconvert.schemas import JobRequest
from videoconvert.store import Store


class FakeTool(FFmpegTool):
    """Stands in for ffprobe/ffmpeg. Cube faces still go through Pillow."""

    def __init__(self, config, duration=30.0, frame_rate=25.0, frame_count=None, unreadable=(), broken=()):
        super().__init__(config)
        self.duration = duration
        self.frame_rate = frame_rate
        self.frame_count = frame_count
        self.unreadable = set(unreadable)
        self.broken = set(broken)
        self.executed = []

    def _matches(self, input_path, names):
        return any(input_path.endswith(name) for name in names)

    async def probe(self, input_path):
        await asyncio.sleep(0)
        if self._matches(input_path, self.unreadable):
            raise ToolError(f"{input_path}: Invalid data found when processing input")
        return ProbeResult(
            duration=self.duration,
            frame_rate=self.frame_rate,
            frame_count=self.frame_count,
            width=1920,
            height=1080,
            format_name="mov,mp4,m4a,3gp,3g2,mj2",
            raw={"format": {"duration": str(self.duration)}, "streams": [{"codec_type": "video"}]},
        )

    async def _extract_frames(self, input_path, plan, output_dir):
        self.executed.append(("frames", input_path))
        if plan.timestamps is None:
            total = self.frame_count or int(self.duration * self.frame_rate)
            ordinals = range(1, total + 1)
        else:
            ordinals = range(1, len(plan.timestamps) + 1)

        produced = []
        for ordinal in ordinals:
            await asyncio.sleep(0)
            target = output_dir / frame_filename(ordinal)
            target.write_bytes(b"png")
            produced.append(target)
            if self._matches(input_path, self.broken):
                raise ToolError("ffmpeg exited with code 1: Conversion failed!")
        return produced

    async def _trim(self, input_path, params, output_dir):
        self.executed.append(("trim", input_path))
        target = output_dir / TRIM_FILENAME
        target.write_bytes(b"x" * 2048)
        return [target]


@pytest.fixture
def app_config(tmp_path):
    config = AppConfig(
        storage_dir=tmp_path / "storage",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        public_base_url="http://testserver",
    )
    config.ensure_dirs()
    return config


@pytest.fixture
def engine(app_config):
    engine = make_engine(app_config.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return Store(engine)


@pytest.fixture
def tool(app_config):
    return FakeTool(app_config)


@pytest.fixture
def manager(store, tool, app_config):
    return JobManager(store, tool, app_config)


@pytest.fixture
def history(store, app_config):
    return HistoryService(store, app_config.public_base_url)


@pytest.fixture
def make_upload(app_config):
    def _make(name="clip.mp4", content=b"not really a video"):
        path = app_config.upload_dir / f"{uuid4().hex}-{name}"
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def make_image(app_config):
    def _make(name="pano.png", size=(800, 400), color=(10, 120, 200)):
        path = app_config.upload_dir / f"{uuid4().hex}-{name}"
        Image.new("RGB", size, color=color).save(path)
        return path

    return _make


@pytest.fixture
def make_request():
    def _make(path, operation, **parameters):
        name = os.path.basename(str(path)).split("-", 1)[-1]
        return JobRequest(
            operation=OperationKind(operation),
            input_path=str(path),
            original_filename=name,
            stored_filename=os.path.basename(str(path)),
            size_bytes=os.path.getsize(path) if os.path.exists(path) else None,
            mime_type="image/png" if name.endswith(".png") else "video/mp4",
            parameters=parameters,
        )

    return _make
