#!/usr/bin/env python3
"""
Tubely CLI - seed data, mint tokens and upload media to a running server.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.errors import truncate_error
from config import (
    ACCESS_TOKEN_TTL,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    JWT_SECRET,
    MAX_THUMBNAIL_UPLOAD_SIZE,
    MAX_VIDEO_UPLOAD_SIZE,
    PUBLIC_BASE_URL,
    THUMBNAIL_MEDIA_TYPES,
    VIDEO_MEDIA_TYPE,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("TUBELY_API_TIMEOUT", "30"))

# Upload timeout in seconds (default 2 hours)
UPLOAD_TIMEOUT = int(os.getenv("TUBELY_UPLOAD_TIMEOUT", "7200"))

API_BASE = os.getenv("TUBELY_API_URL", PUBLIC_BASE_URL).rstrip("/")


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        # Empty reads at EOF don't advance progress
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()

    def close(self):
        """The underlying file is managed by the caller."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path: Path, max_size: int) -> int:
    """
    Validate file exists, is readable, non-empty and under ``max_size``.

    Returns:
        int: File size in bytes
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > max_size:
        raise CLIError(
            f"File too large ({file_size / (1024 * 1024):.1f} MB). "
            f"Maximum upload size is {max_size / (1024 * 1024):.0f} MB"
        )

    return file_size


def thumbnail_media_type(file_path: Path) -> str:
    """Map a thumbnail file's extension to the media type the server accepts."""
    suffix = file_path.suffix.lower()
    if suffix == ".jpeg":
        suffix = ".jpg"
    for media_type, extension in THUMBNAIL_MEDIA_TYPES.items():
        if extension == suffix:
            return media_type
    raise CLIError(f"Unsupported thumbnail extension '{file_path.suffix}'. Use .jpg, .png, .webp or .gif")


def get_auth_headers(token: str) -> dict:
    if not token:
        raise CLIError("No access token. Pass --token or set TUBELY_TOKEN (see 'tubely token').")
    return {"Authorization": f"Bearer {token}"}


def _run_db(coro_factory):
    """Run an async database operation with a connected database."""
    from api.database import database

    async def runner():
        await database.connect()
        try:
            return await coro_factory()
        finally:
            await database.disconnect()

    return asyncio.run(runner())


def post_file(url: str, field: str, file_path: Path, media_type: str, file_size: int, headers: dict) -> dict:
    """POST a file as multipart form data, showing a progress bar."""
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    ) as progress:
        task_id = progress.add_task("Uploading...", total=file_size)

        with open(file_path, "rb") as f:
            wrapped_file = ProgressFileWrapper(f, progress, task_id)
            files = {field: (file_path.name, wrapped_file, media_type)}

            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                response = client.post(url, files=files, headers=headers)

    return safe_json_response(response)


def cmd_init_db(args):
    """Create the database tables."""
    from api.database import create_tables

    create_tables()
    print("Database tables created.")


def cmd_create_user(args):
    """Create a user and print its id."""
    from api.video_store import create_user

    try:
        user = _run_db(lambda: create_user(args.email))
    except Exception as e:
        print(f"Error: could not create user: {e}")
        sys.exit(1)
    print(f"Created user {user.email}")
    print(f"  ID: {user.id}")


def cmd_create_video(args):
    """Create a video row owned by a user."""
    from api.video_store import create_video

    try:
        video = _run_db(lambda: create_video(args.user_id, args.title, args.description or ""))
    except Exception as e:
        print(f"Error: could not create video: {e}")
        sys.exit(1)
    print(f"Created video '{video.title}'")
    print(f"  ID: {video.id}")


def cmd_token(args):
    """Mint an access token for a user."""
    from api.auth import make_jwt

    if not JWT_SECRET:
        print("Error: TUBELY_JWT_SECRET is not set")
        sys.exit(1)
    print(make_jwt(args.user_id, JWT_SECRET, expires_in=args.ttl))


def _upload(args, kind: str):
    file_path = Path(args.file)
    try:
        headers = get_auth_headers(args.token)
        if kind == "video":
            file_size = validate_file(file_path, MAX_VIDEO_UPLOAD_SIZE)
            media_type = VIDEO_MEDIA_TYPE
        else:
            file_size = validate_file(file_path, MAX_THUMBNAIL_UPLOAD_SIZE)
            media_type = thumbnail_media_type(file_path)

        print(f"Uploading {kind}: {file_path.name}")
        result = post_file(f"{API_BASE}/{kind}/{args.video_id}", kind, file_path, media_type, file_size, headers)

        url = result.get("videoURL") if kind == "video" else result.get("thumbnailURL")
        print(f"Success! {kind.capitalize()} published.")
        print(f"  ID: {result['id']}")
        if url:
            print(f"  URL: {truncate_error(url, ERROR_DETAIL_MAX_LENGTH)}")

    except httpx.ConnectError:
        print(f"Error: Could not connect to API at {API_BASE}")
        print("Make sure the server is running.")
        sys.exit(1)
    except httpx.TimeoutException:
        print(f"Error: Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
        print("You can increase the timeout with TUBELY_UPLOAD_TIMEOUT environment variable")
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_upload_video(args):
    """Upload an MP4 for a video."""
    _upload(args, "video")


def cmd_upload_thumbnail(args):
    """Upload a thumbnail image for a video."""
    _upload(args, "thumbnail")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tubely", description="Tubely CLI - manage videos and uploads")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    user_parser = subparsers.add_parser("create-user", help="Create a user")
    user_parser.add_argument("email", help="User email")
    user_parser.set_defaults(func=cmd_create_user)

    video_parser = subparsers.add_parser("create-video", help="Create a video owned by a user")
    video_parser.add_argument("user_id", help="Owner user ID (UUID)")
    video_parser.add_argument("title", help="Video title")
    video_parser.add_argument("-d", "--description", help="Video description")
    video_parser.set_defaults(func=cmd_create_video)

    token_parser = subparsers.add_parser("token", help="Mint an access token for a user")
    token_parser.add_argument("user_id", help="User ID (UUID)")
    token_parser.add_argument("--ttl", type=int, default=ACCESS_TOKEN_TTL, help="Lifetime in seconds")
    token_parser.set_defaults(func=cmd_token)

    for name, func, help_text in (
        ("upload-video", cmd_upload_video, "Upload an MP4 for a video"),
        ("upload-thumbnail", cmd_upload_thumbnail, "Upload a thumbnail image for a video"),
    ):
        upload_parser = subparsers.add_parser(name, help=help_text)
        upload_parser.add_argument("video_id", help="Video ID (UUID)")
        upload_parser.add_argument("file", help="File to upload")
        upload_parser.add_argument(
            "--token", default=os.getenv("TUBELY_TOKEN", ""), help="Access token (default: $TUBELY_TOKEN)"
        )
        upload_parser.set_defaults(func=func)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
