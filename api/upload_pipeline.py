"""
Upload pipeline for thumbnails and videos.

Every upload runs the same strict sequence:

    parse id -> load video (404) -> ownership (403) -> read form -> validate (400)

Videos then continue with:

    stage to scratch -> fast-start remux -> probe aspect -> publish -> persist

Validation happens before any side effect. Once staging starts, every scratch
file is tracked by ``ScratchFiles`` and removed on the way out whether the
request succeeded or failed. The video row's URL is only written after the
object store accepted the file.
"""

import logging
import re
import secrets
import uuid
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import aiofiles
from starlette.datastructures import FormData, UploadFile

from api.errors import BadRequestError, NotFoundError, UserForbiddenError
from api.object_storage import ObjectStore
from api.thumbnail_storage import ThumbnailStore
from api.video_store import VideoRecord, get_video, update_video
from config import (
    MAX_THUMBNAIL_UPLOAD_SIZE,
    MAX_VIDEO_UPLOAD_SIZE,
    THUMBNAIL_MEDIA_TYPES,
    UPLOAD_CHUNK_SIZE,
    VIDEO_MEDIA_TYPE,
)
from worker.media_tools import fast_start_output_path, get_video_aspect_class, process_video_for_fast_start
from worker.process_runner import ProcessRunner

logger = logging.getLogger(__name__)

FormReader = Callable[[], Awaitable[FormData]]

DEFAULT_VIDEO_EXTENSION = ".mp4"
_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


# ============================================================================
# Validation
# ============================================================================


def parse_video_id(raw: Optional[str]) -> str:
    """Normalize a path parameter into a canonical UUID string."""
    if not raw:
        raise BadRequestError("Invalid video ID")
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        raise BadRequestError("Invalid video ID")


async def load_owned_video(video_id: str, user_id: str) -> VideoRecord:
    """Fetch a video and make sure ``user_id`` owns it."""
    video = await get_video(video_id)
    if video is None:
        raise NotFoundError("Couldn't find video")
    if video.user_id != user_id:
        raise UserForbiddenError("Video does not belong to this user")
    return video


def get_upload_file(form: FormData, field: str) -> UploadFile:
    """Return the uploaded file in ``field`` or fail if it is missing or not a file."""
    value = form.get(field)
    if not isinstance(value, UploadFile):
        raise BadRequestError(f"{field} is not a file")
    return value


def declared_media_type(upload: UploadFile) -> str:
    """The upload's media type without parameters, lower-cased."""
    return (upload.content_type or "").split(";")[0].strip().lower()


def staging_extension(filename: Optional[str]) -> str:
    """The upload's extension if it is short and alphanumeric, else ``.mp4``."""
    suffix = Path(filename or "").suffix.lower()
    if _SAFE_EXTENSION.match(suffix):
        return suffix
    return DEFAULT_VIDEO_EXTENSION


def _format_size(size: int) -> str:
    if size >= 1 << 30:
        return f"{size / (1 << 30):g}GB"
    return f"{size / (1 << 20):g}MB"


def check_declared_size(upload: UploadFile, max_size: int, label: str) -> None:
    """Reject uploads whose declared size is over the ceiling."""
    size = getattr(upload, "size", None)
    if size is not None and size > max_size:
        raise BadRequestError(f"{label} is larger than {_format_size(max_size)}")


# ============================================================================
# Scratch files
# ============================================================================


class ScratchFiles:
    """
    Tracks the scratch files created by one upload and removes them on exit.

    Paths are registered before anything is written to them, so a file that
    a failing step only partially wrote is removed too. ``cleanup`` can run
    any number of times; files that are already gone are skipped. A failure
    to remove a file is logged and never replaces the exception that is
    already propagating.
    """

    def __init__(self, scratch_dir: Path):
        self.scratch_dir = scratch_dir
        self.file_id = secrets.token_hex(16)
        self._paths: List[Path] = []

    def __enter__(self) -> "ScratchFiles":
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    def register(self, path: Path) -> Path:
        if path not in self._paths:
            self._paths.append(path)
        return path

    def staging_path(self, extension: str) -> Path:
        """Scratch path for the raw upload. ``extension`` must come from ``staging_extension``."""
        return self.register(self.scratch_dir / f"{self.file_id}{extension}")

    def cleanup(self) -> None:
        for path in self._paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove scratch file {path}: {e}")


async def stage_upload(upload: UploadFile, destination: Path, max_size: int, label: str = "Upload") -> int:
    """
    Stream an upload to ``destination`` in chunks, enforcing ``max_size``.

    Returns the number of bytes written. The caller owns ``destination`` and
    is responsible for removing it.
    """
    total_size = 0
    async with aiofiles.open(destination, "wb") as f:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > max_size:
                raise BadRequestError(f"{label} is larger than {_format_size(max_size)}")
            await f.write(chunk)
    return total_size


# ============================================================================
# Pipelines
# ============================================================================


async def upload_thumbnail(
    video_id: str,
    user_id: str,
    read_form: FormReader,
    store: ThumbnailStore,
    max_size: int = MAX_THUMBNAIL_UPLOAD_SIZE,
) -> VideoRecord:
    """Validate a thumbnail upload, store it with the active policy and record its URL."""
    video_id = parse_video_id(video_id)
    logger.info(f"Uploading thumbnail for video {video_id} by user {user_id}")

    video = await load_owned_video(video_id, user_id)

    form = await read_form()
    image = get_upload_file(form, "thumbnail")
    check_declared_size(image, max_size, "Thumbnail")

    media_type = declared_media_type(image)
    extension = THUMBNAIL_MEDIA_TYPES.get(media_type)
    if extension is None:
        raise BadRequestError(f"Unsupported thumbnail type. Allowed: {', '.join(sorted(THUMBNAIL_MEDIA_TYPES))}")

    data = await image.read(max_size + 1)
    if len(data) > max_size:
        raise BadRequestError(f"Thumbnail is larger than {_format_size(max_size)}")
    if not data:
        raise BadRequestError("Thumbnail is empty")

    previous_url = video.thumbnail_url
    video.thumbnail_url = await store.save(video, data, media_type, extension)
    await update_video(video)

    # Only once the row points at the new image
    if previous_url and previous_url != video.thumbnail_url:
        try:
            await store.discard(previous_url)
        except OSError as e:
            logger.warning(f"Failed to remove replaced thumbnail for video {video.id}: {e}")

    updated = await get_video(video.id)
    if updated is None:
        raise NotFoundError("Couldn't find video")
    return updated


async def upload_video(
    video_id: str,
    user_id: str,
    read_form: FormReader,
    runner: ProcessRunner,
    object_store: ObjectStore,
    scratch_dir: Path,
    max_size: int = MAX_VIDEO_UPLOAD_SIZE,
) -> VideoRecord:
    """Validate, stage, remux, classify and publish a video upload."""
    video_id = parse_video_id(video_id)
    logger.info(f"Uploading video for video {video_id} by user {user_id}")

    video = await load_owned_video(video_id, user_id)

    form = await read_form()
    upload = get_upload_file(form, "video")
    check_declared_size(upload, max_size, "Video")
    if declared_media_type(upload) != VIDEO_MEDIA_TYPE:
        raise BadRequestError("Only MP4 video files are allowed")

    extension = staging_extension(upload.filename)

    with ScratchFiles(scratch_dir) as scratch:
        staged_path = scratch.staging_path(extension)
        size = await stage_upload(upload, staged_path, max_size, "Video")
        logger.info(f"Staged {size} bytes for video {video_id} at {staged_path.name}")

        # Registered before ffmpeg runs so a partial output is removed as well
        scratch.register(fast_start_output_path(staged_path))
        processed_path = await process_video_for_fast_start(staged_path, runner)

        aspect = await get_video_aspect_class(processed_path, runner)
        key = f"{aspect.value}/{scratch.file_id}.mp4"

        await object_store.put(key, processed_path, VIDEO_MEDIA_TYPE)

        video.video_url = object_store.public_url(key)
        await update_video(video)

    updated = await get_video(video.id)
    if updated is None:
        raise NotFoundError("Couldn't find video")
    return updated
