"""
Persistence accessors for users and videos.

The upload pipeline only needs ``get_video`` and ``update_video``; the
creation helpers exist for the CLI and for seeding test data.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from api.common import ensure_utc
from api.database import users, videos
from api.db_retry import db_execute_with_retry, fetch_one_with_retry

logger = logging.getLogger(__name__)


@dataclass
class VideoRecord:
    id: str
    user_id: str
    title: str
    description: str = ""
    thumbnail_url: Optional[str] = None
    video_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "VideoRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            description=row["description"] or "",
            thumbnail_url=row["thumbnail_url"],
            video_url=row["video_url"],
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )


@dataclass
class UserRecord:
    id: str
    email: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


async def get_video(video_id: str) -> Optional[VideoRecord]:
    """Fetch a video by id, or None if it does not exist."""
    row = await fetch_one_with_retry(videos.select().where(videos.c.id == video_id))
    if row is None:
        return None
    return VideoRecord.from_row(row)


async def update_video(video: VideoRecord) -> None:
    """Write the mutable fields of a video back to the database."""
    video.updated_at = datetime.now(timezone.utc)
    await db_execute_with_retry(
        videos.update()
        .where(videos.c.id == video.id)
        .values(
            title=video.title,
            description=video.description,
            thumbnail_url=video.thumbnail_url,
            video_url=video.video_url,
            updated_at=video.updated_at,
        )
    )


async def create_user(email: str) -> UserRecord:
    user = UserRecord(id=str(uuid.uuid4()), email=email)
    await db_execute_with_retry(
        users.insert().values(
            id=user.id,
            email=user.email,
            created_at=user.created_at,
            updated_at=user.created_at,
        )
    )
    logger.info(f"Created user {user.id} ({email})")
    return user


async def create_video(user_id: str, title: str, description: str = "") -> VideoRecord:
    now = datetime.now(timezone.utc)
    video = VideoRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        title=title,
        description=description,
        created_at=now,
        updated_at=now,
    )
    await db_execute_with_retry(
        videos.insert().values(
            id=video.id,
            user_id=video.user_id,
            title=video.title,
            description=video.description,
            created_at=now,
            updated_at=now,
        )
    )
    logger.info(f"Created video {video.id} for user {user_id}")
    return video
