"""
Thumbnail storage policies.

One policy is chosen at startup (TUBELY_THUMBNAIL_STORAGE):

- memory:     bytes kept in this process, served by GET /thumbnail/{id}.
              Lost on restart and not shared between instances.
- data_url:   the image is inlined on the video row as a data: URL.
              No asset store needed, but rows grow with the image.
- filesystem: the image is written to the assets directory and served
              from /assets.

Each policy can also load the bytes back for GET /thumbnail/{id}.
"""

import asyncio
import base64
import binascii
import logging
import re
import secrets
from pathlib import Path
from typing import Dict, Optional, Tuple

from api.enums import ThumbnailStoragePolicy
from api.video_store import VideoRecord
from config import THUMBNAIL_MEDIA_TYPES

logger = logging.getLogger(__name__)

Thumbnail = Tuple[bytes, str]

_DATA_URL_PATTERN = re.compile(r"^data:(?P<media_type>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL)


class ThumbnailStore:
    """Interface shared by the thumbnail policies."""

    policy: ThumbnailStoragePolicy

    async def save(self, video: VideoRecord, data: bytes, media_type: str, extension: str) -> str:
        """Store the image and return the URL to put on the video's thumbnail_url."""
        raise NotImplementedError

    async def load(self, video: VideoRecord) -> Optional[Thumbnail]:
        """Return (bytes, media type) for the video's current thumbnail, if any."""
        raise NotImplementedError

    async def discard(self, url: str) -> None:
        """Remove the asset behind a replaced thumbnail URL, if the policy keeps one."""
        return None


class MemoryThumbnailStore(ThumbnailStore):
    policy = ThumbnailStoragePolicy.MEMORY

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._thumbnails: Dict[str, Thumbnail] = {}

    async def save(self, video: VideoRecord, data: bytes, media_type: str, extension: str) -> str:
        self._thumbnails[video.id] = (data, media_type)
        return f"{self.base_url}/thumbnail/{video.id}"

    async def load(self, video: VideoRecord) -> Optional[Thumbnail]:
        return self._thumbnails.get(video.id)


class DataURLThumbnailStore(ThumbnailStore):
    policy = ThumbnailStoragePolicy.DATA_URL

    async def save(self, video: VideoRecord, data: bytes, media_type: str, extension: str) -> str:
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{media_type};base64,{encoded}"

    async def load(self, video: VideoRecord) -> Optional[Thumbnail]:
        if not video.thumbnail_url:
            return None
        match = _DATA_URL_PATTERN.match(video.thumbnail_url)
        if not match:
            return None
        try:
            data = base64.b64decode(match.group("payload"), validate=True)
        except binascii.Error:
            logger.warning(f"Corrupt data URL thumbnail on video {video.id}")
            return None
        return data, match.group("media_type")


class FilesystemThumbnailStore(ThumbnailStore):
    policy = ThumbnailStoragePolicy.FILESYSTEM

    def __init__(self, assets_root: Path, base_url: str):
        self.assets_root = assets_root
        self.base_url = base_url.rstrip("/")

    def _url_prefix(self) -> str:
        return f"{self.base_url}/assets/"

    async def save(self, video: VideoRecord, data: bytes, media_type: str, extension: str) -> str:
        # token_urlsafe never produces "/" so the name is always a single path segment
        file_name = f"{secrets.token_urlsafe(32)}{extension}"
        path = self.assets_root / file_name

        def _write():
            self.assets_root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write)
        return f"{self._url_prefix()}{file_name}"

    def _asset_path(self, url: Optional[str]) -> Optional[Path]:
        """Map one of our thumbnail URLs back to its file, or None for anything else."""
        if not url or not url.startswith(self._url_prefix()):
            return None
        file_name = url[len(self._url_prefix()) :]
        if not file_name or "/" in file_name or file_name.startswith("."):
            return None
        return self.assets_root / file_name

    async def load(self, video: VideoRecord) -> Optional[Thumbnail]:
        path = self._asset_path(video.thumbnail_url)
        if path is None or not path.is_file():
            return None

        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, path.read_bytes)
        return data, _media_type_for(path.suffix)

    async def discard(self, url: str) -> None:
        path = self._asset_path(url)
        if path is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: path.unlink(missing_ok=True))
        logger.info(f"Removed replaced thumbnail {path.name}")


def _media_type_for(extension: str) -> str:
    for media_type, ext in THUMBNAIL_MEDIA_TYPES.items():
        if ext == extension.lower():
            return media_type
    return "application/octet-stream"


def create_thumbnail_store(policy: str, *, assets_root: Path, base_url: str) -> ThumbnailStore:
    """Build the thumbnail store for the configured policy."""
    policy = ThumbnailStoragePolicy(policy)
    if policy is ThumbnailStoragePolicy.MEMORY:
        return MemoryThumbnailStore(base_url)
    if policy is ThumbnailStoragePolicy.DATA_URL:
        return DataURLThumbnailStore()
    return FilesystemThumbnailStore(assets_root, base_url)
