# backend/videoconvert/errors.py


class VideoConvertError(Exception):
    """Base class for errors raised by the job pipeline."""


class InvalidInput(VideoConvertError):
    """Missing upload or missing/contradictory parameters. No job is created."""


class ToolError(VideoConvertError):
    """ffmpeg, ffprobe or the image library reported a failure."""


class StorageError(VideoConvertError):
    """The database rejected a read or a write."""


class JobStateError(StorageError):
    """An update would break the job status rules."""


class NotFound(VideoConvertError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id
