from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.video_store import VideoRecord


class VideoResponse(BaseModel):
    """JSON representation of a video, using the client's camelCase field names."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(alias="userID")
    title: str
    description: str = ""
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailURL")
    video_url: Optional[str] = Field(default=None, alias="videoURL")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""

    @classmethod
    def from_record(cls, video: VideoRecord) -> "VideoResponse":
        return cls(
            id=video.id,
            user_id=video.user_id,
            title=video.title,
            description=video.description,
            thumbnail_url=video.thumbnail_url,
            video_url=video.video_url,
            created_at=video.created_at,
            updated_at=video.updated_at,
        )


class HealthResponse(BaseModel):
    status: str
    checks: Dict[str, bool]
    checked_at: str
