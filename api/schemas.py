from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from config import MAX_DESCRIPTION_LENGTH, MAX_NAME_LENGTH, MAX_TITLE_LENGTH


class CamelModel(BaseModel):
    """Base model whose JSON field names are camelCase (videoUrl, isHidden, ...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Identity
class UserLogin(CamelModel):
    name: str = Field(..., max_length=MAX_NAME_LENGTH)
    email: str = Field(..., max_length=255)

    @field_validator("name", "email")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class UserResponse(CamelModel):
    id: str
    name: str
    email: str
    avatar: str
    is_admin: bool = False


# Videos
class VideoCreate(CamelModel):
    """Metadata sent with an upload (JSON body or multipart text fields)."""

    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = Field(default="", max_length=MAX_DESCRIPTION_LENGTH)
    uploader_id: str = Field(..., min_length=1, max_length=255)
    uploader_name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    thumbnail_url: str = ""
    # Only set for direct uploads: object name returned by /api/upload-url
    video_filename: Optional[str] = Field(default=None, max_length=255)

    @field_validator("title", "uploader_id", "uploader_name", mode="before")
    @classmethod
    def strip_required(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", "thumbnail_url", mode="before")
    @classmethod
    def default_empty(cls, v):
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("thumbnail_url")
    @classmethod
    def validate_thumbnail_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://", "data:image/", "/")):
            raise ValueError("thumbnailUrl must be an http(s) URL, a site path or a data:image URL")
        return v

    @field_validator("video_filename")
    @classmethod
    def validate_video_filename(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("videoFilename must be a plain file name")
        return v


class VideoResponse(CamelModel):
    id: str
    title: str
    description: str = ""
    video_url: str
    thumbnail_url: str = ""
    uploader_id: str
    uploader_name: str
    created_at: Optional[datetime] = None
    is_hidden: bool = False

    @field_validator("description", "thumbnail_url", mode="before")
    @classmethod
    def default_empty(cls, v):
        return v if v is not None else ""


class VisibilityUpdate(CamelModel):
    is_hidden: bool


class UploadUrlResponse(CamelModel):
    url: str
    filename: str


# Votes
class VoteCreate(CamelModel):
    # Optional so that a missing id is reported as 400, not a 422 validation error
    user_id: Optional[str] = Field(default=None, max_length=255)
    video_id: Optional[str] = Field(default=None, max_length=64)
    user_email: Optional[str] = Field(default=None, max_length=255)


VoteMap = Dict[str, str]


class SuccessResponse(CamelModel):
    success: bool = True


class ResetVotesResponse(CamelModel):
    success: bool = True
    deleted: int


class VideoResult(CamelModel):
    video_id: str
    title: str
    uploader_name: str
    is_hidden: bool = False
    vote_count: int = 0
    voters: List[str] = []


class ResultsResponse(CamelModel):
    total_votes: int
    results: List[VideoResult]
