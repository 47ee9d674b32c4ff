"""
ffmpeg / ffprobe wrappers used by the video upload pipeline.

- Fast-start remux: move the MP4 index (moov atom) in front of the sample data
  without re-encoding, so playback can begin before the download finishes.
- Probe: read the first video stream's dimensions and bucket the aspect ratio.
"""

import json
import logging
import math
from pathlib import Path
from typing import Any, Tuple

from api.enums import AspectClass
from api.errors import ExternalToolError
from config import ASPECT_RATIO_TOLERANCE, FFMPEG_PATH, FFPROBE_PATH
from worker.process_runner import ProcessRunner

logger = logging.getLogger(__name__)

LANDSCAPE_RATIO = 16 / 9
PORTRAIT_RATIO = 9 / 16
FAST_START_SUFFIX = ".processed.mp4"
# Absorbs float rounding so a ratio exactly on the tolerance edge counts as inside
_BOUNDARY_EPSILON = 1e-9


def fast_start_output_path(input_path: Path) -> Path:
    """Path the remuxed file is written to: the input path plus a fixed suffix."""
    return input_path.with_name(input_path.name + FAST_START_SUFFIX)


async def process_video_for_fast_start(input_path: Path, runner: ProcessRunner) -> Path:
    """Remux ``input_path`` for progressive playback and return the new file's path.

    Streams are copied, not re-encoded, and container metadata is preserved.

    Raises:
        ExternalToolError: ffmpeg is missing, could not run, or exited non-zero
    """
    output_path = fast_start_output_path(input_path)
    args = [
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-i",
        str(input_path),
        "-map_metadata",
        "0",
        "-codec",
        "copy",
        "-movflags",
        "faststart",
        "-f",
        "mp4",
        str(output_path),
    ]

    result = await runner.run(FFMPEG_PATH, args)
    if not result.ok:
        diagnostic = result.stderr_text()
        logger.error(f"ffmpeg fast-start remux failed for {input_path.name} (exit {result.exit_code}): {diagnostic}")
        raise ExternalToolError("ffmpeg", "fast-start remux failed", exit_code=result.exit_code, diagnostic=diagnostic)

    return output_path


def _positive_dimension(value: Any, name: str) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ExternalToolError("ffprobe", f"unparseable stream {name}: {value!r}")
    if not math.isfinite(number) or number <= 0 or number != int(number):
        raise ExternalToolError("ffprobe", f"invalid stream {name}: {value!r}")
    return int(number)


async def probe_video_dimensions(path: Path, runner: ProcessRunner) -> Tuple[int, int]:
    """Return (width, height) of the first video stream in ``path``.

    Raises:
        ExternalToolError: ffprobe failed, its output is not JSON, there is no
            video stream, or the dimensions are not positive finite integers
    """
    args = [
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=width,height",
        "-of",
        "json",
        str(path),
    ]

    result = await runner.run(FFPROBE_PATH, args)
    if not result.ok:
        diagnostic = result.stderr_text()
        logger.error(f"ffprobe failed for {path.name} (exit {result.exit_code}): {diagnostic}")
        raise ExternalToolError("ffprobe", "probe failed", exit_code=result.exit_code, diagnostic=diagnostic)

    try:
        data = json.loads(result.stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise ExternalToolError("ffprobe", "output is not valid JSON", diagnostic=str(e))

    streams = data.get("streams") if isinstance(data, dict) else None
    if not streams or not isinstance(streams[0], dict):
        raise ExternalToolError("ffprobe", "no video stream found")

    stream = streams[0]
    width = _positive_dimension(stream.get("width"), "width")
    height = _positive_dimension(stream.get("height"), "height")
    return width, height


def classify_aspect_ratio(width: int, height: int, tolerance: float = ASPECT_RATIO_TOLERANCE) -> AspectClass:
    """Bucket width/height into landscape (~16:9), portrait (~9:16) or other.

    Both tolerance boundaries are inclusive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Dimensions must be positive, got {width}x{height}")

    ratio = width / height
    if abs(ratio - LANDSCAPE_RATIO) <= tolerance + _BOUNDARY_EPSILON:
        return AspectClass.LANDSCAPE
    if abs(ratio - PORTRAIT_RATIO) <= tolerance + _BOUNDARY_EPSILON:
        return AspectClass.PORTRAIT
    return AspectClass.OTHER


async def get_video_aspect_class(path: Path, runner: ProcessRunner) -> AspectClass:
    """Probe ``path`` and classify its primary video stream."""
    width, height = await probe_video_dimensions(path, runner)
    aspect = classify_aspect_ratio(width, height)
    logger.info(f"Probed {path.name}: {width}x{height} ({width / height:.3f}) -> {aspect.value}")
    return aspect
