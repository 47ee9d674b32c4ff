"""
Durable object storage for published videos.

Keys are opaque to the store. Public URLs are derived from the key by string
composition, so nothing beyond the key has to be remembered to rebuild them.
"""

import asyncio
import functools
import logging
import shutil
from pathlib import Path
from typing import Optional

import boto3

from api.enums import VideoStorageBackend

logger = logging.getLogger(__name__)


class ObjectStore:
    """Interface for the object storage collaborator."""

    async def put(self, key: str, source_path: Path, content_type: str) -> None:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


class S3ObjectStore(ObjectStore):
    """Uploads to an S3 bucket with boto3 (in the default executor)."""

    def __init__(self, bucket: str, region: str, client=None):
        if not bucket:
            raise ValueError("S3 bucket is not configured (set TUBELY_S3_BUCKET)")
        self.bucket = bucket
        self.region = region
        self._client = client

    @property
    def client(self):
        # Created lazily so importing the app never needs AWS credentials
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    async def put(self, key: str, source_path: Path, content_type: str) -> None:
        upload = functools.partial(
            self.client.upload_file,
            str(source_path),
            self.bucket,
            key,
            ExtraArgs={"ContentType": content_type},
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, upload)
        logger.info(f"Uploaded {source_path.name} to s3://{self.bucket}/{key}")

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"


class LocalObjectStore(ObjectStore):
    """Copies objects under the assets directory, which the app serves at /assets."""

    def __init__(self, root: Path, base_url: str):
        self.root = root
        self.base_url = base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        # Keys are generated server-side; refuse anything that escapes the root anyway
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Invalid object key: {key!r}")
        return path

    async def put(self, key: str, source_path: Path, content_type: str) -> None:
        destination = self._path_for(key)

        def _copy():
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source_path, destination)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _copy)
        logger.info(f"Stored {source_path.name} at {destination}")

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/assets/{key}"


def create_object_store(
    backend: str,
    *,
    bucket: str = "",
    region: str = "",
    assets_root: Optional[Path] = None,
    base_url: str = "",
) -> ObjectStore:
    """Build the object store selected for this deployment."""
    backend = VideoStorageBackend(backend)
    if backend is VideoStorageBackend.S3:
        return S3ObjectStore(bucket, region)
    if assets_root is None:
        raise ValueError("Local object storage needs an assets root")
    return LocalObjectStore(assets_root, base_url)
