# backend/videoconvert/sampling.py
import math
from typing import List, Optional

MAX_AUTO_FRAMES = 10
END_MARGIN = 0.05  # seconds, when the frame rate is unknown


def default_frame_count(duration: float) -> int:
    """One frame per ten seconds, at least one and at most ten."""
    return min(MAX_AUTO_FRAMES, max(1, int(math.floor(duration / 10))))


def count_timestamps(duration: float, requested: int, total_frames: Optional[int] = None) -> List[float]:
    """``requested`` samples evenly spaced, never at the exact start or end.

    The count is capped by the frames available in the source.
    """
    count = requested if total_frames is None else min(requested, total_frames)
    if count <= 0 or duration <= 0:
        return []
    spacing = duration / (count + 1)
    return [spacing * (i + 1) for i in range(count)]


def per_second_timestamps(duration: float, frame_rate: Optional[float] = None) -> List[float]:
    """One sample per whole second: 1, 2, ... floor(duration).

    A second that falls exactly on the end is moved back one frame, since
    nothing can be decoded at the end instant.
    """
    step = 1 / frame_rate if frame_rate else END_MARGIN
    timestamps = []
    for second in range(1, int(math.floor(duration)) + 1):
        timestamps.append(float(second) if second < duration else max(duration - step, 0.0))
    return timestamps


def all_frame_timestamps(count: int, frame_rate: float) -> List[float]:
    return [index / frame_rate for index in range(count)]
