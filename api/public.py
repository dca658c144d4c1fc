"""
Votely API - video uploads, the contest feed, voting and moderation.
Runs on port 8080 (VOTELY_PORT / PORT).
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.datastructures import UploadFile

from api import storage
from api.audit import AuditAction, log_audit
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    ensure_utc,
    get_real_ip,
    get_request_id,
    is_admin_request,
    rate_limit_exceeded_handler,
    require_admin,
)
from api.database import configure_database, create_tables, database, videos, votes, write_transaction
from api.db_retry import (
    DatabaseRetryableError,
    db_execute_with_retry,
    execute_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
)
from api.enums import UploadMode, VoteAction
from api.errors import sanitize_error_message
from api.exception_utils import handle_api_exceptions
from api.metrics import (
    THUMBNAILS_GENERATED_TOTAL,
    VIDEO_UPLOADS_TOTAL,
    VOTES_TOTAL,
    MetricsMiddleware,
    get_metrics,
    init_app_info,
)
from api.schemas import (
    ResetVotesResponse,
    ResultsResponse,
    SuccessResponse,
    UploadUrlResponse,
    UserLogin,
    UserResponse,
    VideoCreate,
    VideoResponse,
    VisibilityUpdate,
    VoteCreate,
)
from api.seed import seed_demo_data
from api.thumbnails import create_thumbnail_data_url
from api.users import build_user
from api.voting import (
    HiddenVideoError,
    VideoNotFoundError,
    cast_vote,
    get_vote_map,
    remove_vote,
    reset_votes,
    tally,
)
from code_version import CODE_VERSION
from config import (
    ALLOWED_VIDEO_CONTENT_TYPES,
    ALLOWED_VIDEO_CONTENT_TYPES_STR,
    CORS_ALLOWED_ORIGINS,
    HOST,
    LOG_LEVEL,
    MAX_UPLOAD_SIZE,
    PORT,
    RATE_LIMIT_ADMIN,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    RATE_LIMIT_VOTE,
    SEED_DEMO_DATA,
    SERVER_THUMBNAILS_ENABLED,
    TEMP_DIR,
    UPLOAD_CHUNK_SIZE,
    UPLOADS_DIR,
    WEB_DIR,
)

logger = logging.getLogger(__name__)

# Text fields of a multipart upload may carry a data: URL thumbnail
MAX_FORM_FIELD_SIZE = 5 * 1024 * 1024

# Upload metadata keys accepted from JSON bodies and multipart forms
VIDEO_FIELDS = ("title", "description", "uploaderId", "uploaderName", "thumbnailUrl", "videoFilename")
REQUIRED_VIDEO_FIELDS = ("title", "uploaderId", "uploaderName")

# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure Redis: "
            "VOTELY_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    create_tables()
    await database.connect()
    await configure_database()

    mode = await storage.video_storage.init_bucket()
    logger.info(f"Video storage mode: {mode.value}")

    if SEED_DEMO_DATA:
        await seed_demo_data()

    init_app_info(CODE_VERSION)
    yield
    await database.disconnect()


app = FastAPI(title="Votely", description="Video contest voting", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(DatabaseRetryableError)
async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
    """Handle exhausted database retries with a 503 response."""
    logger.warning(f"Database unavailable after retries: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


app.add_middleware(MetricsMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# The SPA and the bucket-upload flow are usually on different origins; no cookies are used
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Admin-Secret", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

# Locally stored videos; the directory may not exist yet in test/CI environments
app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR), check_dir=False), name="uploads")


# =============================================================================
# Helpers
# =============================================================================


def row_to_video(row) -> VideoResponse:
    return VideoResponse(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        video_url=row["video_path"],
        thumbnail_url=row["thumbnail_url"],
        uploader_id=row["uploader_id"],
        uploader_name=row["uploader_name"],
        created_at=ensure_utc(row["created_at"]),
        is_hidden=bool(row["is_hidden"]),
    )


def new_video_id() -> str:
    return f"v-{uuid.uuid4().hex}"


async def get_video_row(video_id: str):
    return await fetch_one_with_retry(videos.select().where(videos.c.id == video_id))


def _field_label(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "body"


def parse_video_metadata(data: Mapping[str, Any]) -> VideoCreate:
    """
    Validate upload metadata from a JSON body or multipart form.

    Raises:
        HTTPException: 400 "Missing required fields" when title, uploaderId or
            uploaderName is absent or blank, 400 with the first validation
            problem otherwise
    """
    fields = {key: data.get(key) for key in VIDEO_FIELDS if data.get(key) is not None}

    for key in REQUIRED_VIDEO_FIELDS:
        value = fields.get(key)
        if not isinstance(value, str) or not value.strip():
            raise HTTPException(status_code=400, detail="Missing required fields")

    try:
        return VideoCreate.model_validate(fields)
    except ValidationError as e:
        first = e.errors()[0]
        raise HTTPException(status_code=400, detail=f"Invalid {_field_label(first['loc'])}: {first['msg']}")


def validate_content_length(request: Request) -> None:
    """
    Reject uploads whose Content-Length already exceeds MAX_UPLOAD_SIZE.

    Raises:
        HTTPException: 413
    """
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            too_large = int(content_length) > MAX_UPLOAD_SIZE
        except ValueError:
            return  # Invalid header; the streaming check still applies
        if too_large:
            raise HTTPException(status_code=413, detail=_too_large_detail(MAX_UPLOAD_SIZE))


def _too_large_detail(max_size: int) -> str:
    return f"File too large. Maximum upload size is {max_size // (1024 * 1024)} MB"


async def save_upload_with_size_limit(file: UploadFile, upload_path: Path, max_size: int = MAX_UPLOAD_SIZE) -> int:
    """
    Stream an upload to disk with size validation.
    Returns the total bytes written.
    Raises HTTPException 413 if the file exceeds max_size, 503 on storage errors.
    """
    total_size = 0
    try:
        upload_path.parent.mkdir(parents=True, exist_ok=True)
        with open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    f.close()
                    upload_path.unlink(missing_ok=True)
                    raise HTTPException(status_code=413, detail=_too_large_detail(max_size))
                f.write(chunk)
    except HTTPException:
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise HTTPException(
            status_code=503,
            detail="Video storage temporarily unavailable. Please try again later.",
            headers={"Retry-After": "30"},
        )
    except BaseException:
        upload_path.unlink(missing_ok=True)
        raise

    return total_size


async def insert_video(metadata: VideoCreate, video_path: str, thumbnail_url: str) -> VideoResponse:
    video = VideoResponse(
        id=new_video_id(),
        title=metadata.title,
        description=metadata.description,
        video_url=video_path,
        thumbnail_url=thumbnail_url,
        uploader_id=metadata.uploader_id,
        uploader_name=metadata.uploader_name,
        created_at=datetime.now(timezone.utc),
        is_hidden=False,
    )
    await db_execute_with_retry(
        videos.insert().values(
            id=video.id,
            title=video.title,
            description=video.description,
            video_path=video.video_url,
            thumbnail_url=video.thumbnail_url,
            uploader_id=video.uploader_id,
            uploader_name=video.uploader_name,
            created_at=video.created_at,
            is_hidden=False,
        )
    )
    return video


def _audit_context(request: Request) -> dict:
    return {
        "client_ip": get_real_ip(request),
        "user_agent": request.headers.get("user-agent"),
        "request_id": get_request_id(request),
    }


# =============================================================================
# Health / metrics
# =============================================================================


@app.get("/health")
@limiter.exempt
async def health_check():
    """Database and storage checks for load balancers and uptime probes."""
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
            "storage_mode": result["storage_mode"],
            "version": CODE_VERSION,
            "timestamp": result["checked_at"],
        },
    )


@app.get("/metrics")
@limiter.exempt
async def metrics():
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


# =============================================================================
# Identity
# =============================================================================


@app.post("/api/auth/login", response_model=UserResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def login(request: Request, credentials: UserLogin):
    """Turn a name and email into a User. Nothing is stored."""
    user = build_user(credentials.name, credentials.email)
    if not user.id:
        raise HTTPException(status_code=400, detail="Email must contain letters or digits")
    if user.is_admin:
        log_audit(AuditAction.USER_LOGIN, resource_type="user", resource_id=user.id, **_audit_context(request))
    return user


# =============================================================================
# Videos
# =============================================================================


@app.get("/api/videos", response_model=List[VideoResponse])
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("list_videos", "Failed to fetch videos")
async def list_videos(
    request: Request,
    include_hidden: bool = Query(False, alias="includeHidden"),
):
    """Contest feed, newest first. Hidden videos are only listed for the admin."""
    if include_hidden:
        await require_admin(request)

    query = videos.select().order_by(videos.c.created_at.desc(), videos.c.id)
    if not include_hidden:
        query = query.where(videos.c.is_hidden == sa.false())

    rows = await fetch_all_with_retry(query)
    return [row_to_video(row) for row in rows]


@app.get("/api/videos/{video_id}", response_model=VideoResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("get_video", "Failed to fetch video")
async def get_video(request: Request, video_id: str):
    row = await get_video_row(video_id)
    if not row or (row["is_hidden"] and not is_admin_request(request)):
        raise HTTPException(status_code=404, detail="Video not found")
    return row_to_video(row)


@app.get("/api/upload-url", response_model=UploadUrlResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("generate_upload_url", "Failed to generate upload URL")
async def get_upload_url(
    request: Request,
    filename: Optional[str] = None,
    content_type: Optional[str] = Query(None, alias="contentType"),
):
    """Signed URL for a direct browser-to-bucket upload."""
    if not filename or not content_type:
        raise HTTPException(status_code=400, detail="Missing filename or contentType")
    if content_type not in ALLOWED_VIDEO_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type '{content_type}'. Allowed: {ALLOWED_VIDEO_CONTENT_TYPES_STR}",
        )

    unique_filename = storage.make_unique_filename(filename)
    try:
        url = await storage.video_storage.generate_signed_url(unique_filename, content_type)
    except storage.StorageUnavailableError:
        raise HTTPException(
            status_code=503,
            detail="Direct uploads are unavailable; upload the file through the API instead",
        )

    logger.info(f"Generated upload URL for {unique_filename} ({content_type})")
    return UploadUrlResponse(url=url, filename=unique_filename)


async def _create_from_json(request: Request) -> VideoResponse:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if not body.get("videoFilename"):
        raise HTTPException(status_code=400, detail="Missing videoFilename")
    metadata = parse_video_metadata(body)

    video_path = storage.video_storage.get_public_url(metadata.video_filename)
    video = await insert_video(metadata, video_path, metadata.thumbnail_url)
    logger.info(f"Video saved (direct upload): {video.id} -> {video_path}")
    return video


async def _create_from_multipart(request: Request) -> VideoResponse:
    validate_content_length(request)

    form = await request.form(max_part_size=MAX_FORM_FIELD_SIZE)
    try:
        file = form.get("video")
        if not isinstance(file, UploadFile):
            raise HTTPException(status_code=400, detail="No video file provided")

        content_type = (file.content_type or "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_VIDEO_CONTENT_TYPES:
            raise HTTPException(
                status_code=400,
                detail="Invalid file type. Only MP4, WebM, and MOV are allowed.",
            )

        # Fields are checked before anything touches storage
        metadata = parse_video_metadata(form)

        filename = storage.make_unique_filename(file.filename or "video")
        temp_path = TEMP_DIR / filename
    except BaseException:
        await form.close()
        raise

    try:
        try:
            await save_upload_with_size_limit(file, temp_path)
        finally:
            await form.close()

        thumbnail_url = metadata.thumbnail_url
        if not thumbnail_url and SERVER_THUMBNAILS_ENABLED:
            try:
                thumbnail_url = await create_thumbnail_data_url(temp_path)
                THUMBNAILS_GENERATED_TOTAL.labels("success").inc()
            except (RuntimeError, OSError) as e:
                THUMBNAILS_GENERATED_TOTAL.labels("failed").inc()
                logger.warning(f"Server thumbnail failed for {filename}: {e}")

        video_path = await storage.video_storage.upload_video(temp_path, filename, content_type)
    finally:
        # upload_video consumes the temp file; this only matters when a step raised
        temp_path.unlink(missing_ok=True)

    try:
        video = await insert_video(metadata, video_path, thumbnail_url)
    except Exception:
        await storage.video_storage.delete_video(video_path)
        raise

    logger.info(f"Video saved (proxy upload): {video.id} -> {video_path}")
    return video


@app.post("/api/videos", response_model=VideoResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
@handle_api_exceptions("upload_video", "Failed to upload video")
async def create_video(request: Request):
    """
    Register a contest video.

    application/json: the file was already PUT to a signed URL; the body names it
    (videoFilename). multipart/form-data: the file arrives in the "video" part and
    is stored in the bucket, or on local disk when the bucket is unavailable.
    """
    content_type = request.headers.get("content-type", "")
    mode = UploadMode.DIRECT if content_type.startswith("application/json") else UploadMode.PROXY

    try:
        if mode == UploadMode.DIRECT:
            video = await _create_from_json(request)
        else:
            video = await _create_from_multipart(request)
    except HTTPException as e:
        VIDEO_UPLOADS_TOTAL.labels(mode.value, "rejected" if e.status_code < 500 else "failed").inc()
        raise
    except Exception as e:
        VIDEO_UPLOADS_TOTAL.labels(mode.value, "failed").inc()
        log_audit(
            AuditAction.VIDEO_UPLOAD,
            resource_type="video",
            success=False,
            error=sanitize_error_message(str(e), log_original=False),
            details={"mode": mode.value},
            **_audit_context(request),
        )
        raise

    VIDEO_UPLOADS_TOTAL.labels(mode.value, "success").inc()
    log_audit(
        AuditAction.VIDEO_UPLOAD,
        resource_type="video",
        resource_id=video.id,
        resource_name=video.title,
        details={"mode": mode.value, "uploader_id": video.uploader_id, "video_url": video.video_url},
        **_audit_context(request),
    )
    return video


@app.patch("/api/videos/{video_id}/visibility", response_model=SuccessResponse)
@limiter.limit(RATE_LIMIT_ADMIN)
@handle_api_exceptions("update_visibility", "Failed to update visibility")
async def update_visibility(
    request: Request,
    video_id: str,
    update: VisibilityUpdate,
    _: None = Depends(require_admin),
):
    row = await get_video_row(video_id)
    if not row:
        raise HTTPException(status_code=404, detail="Video not found")

    await db_execute_with_retry(
        videos.update().where(videos.c.id == video_id).values(is_hidden=update.is_hidden)
    )

    log_audit(
        AuditAction.VIDEO_VISIBILITY,
        resource_type="video",
        resource_id=video_id,
        resource_name=row["title"],
        details={"is_hidden": update.is_hidden},
        **_audit_context(request),
    )
    return SuccessResponse()


async def delete_video_and_votes(video_id: str) -> int:
    """Delete a video row and every vote for it in one transaction. Returns the votes removed."""

    async def _delete():
        async with write_transaction():
            vote_count = await database.fetch_val(
                sa.select(sa.func.count()).select_from(votes).where(votes.c.video_id == video_id)
            )
            await database.execute(votes.delete().where(votes.c.video_id == video_id))
            await database.execute(videos.delete().where(videos.c.id == video_id))
            return vote_count or 0

    return await execute_with_retry(_delete)


@app.delete("/api/videos/{video_id}", response_model=SuccessResponse)
@limiter.limit(RATE_LIMIT_ADMIN)
@handle_api_exceptions("delete_video", "Failed to delete video")
async def delete_video(request: Request, video_id: str, _: None = Depends(require_admin)):
    """Delete a video, its votes, and its media file."""
    row = await get_video_row(video_id)
    if not row:
        raise HTTPException(status_code=404, detail="Video not found")

    removed_votes = await delete_video_and_votes(video_id)

    # Media goes last: a failed delete leaves an orphaned object, never a row without media
    media_deleted = await storage.video_storage.delete_video(row["video_path"])
    if not media_deleted:
        logger.warning(f"Media for deleted video {video_id} was not removed: {row['video_path']}")

    log_audit(
        AuditAction.VIDEO_DELETE,
        resource_type="video",
        resource_id=video_id,
        resource_name=row["title"],
        details={"votes_removed": removed_votes, "media_deleted": media_deleted},
        **_audit_context(request),
    )
    return SuccessResponse()


# =============================================================================
# Votes
# =============================================================================


@app.get("/api/votes", response_model=Dict[str, str])
@limiter.limit(RATE_LIMIT_DEFAULT)
@handle_api_exceptions("list_votes", "Failed to fetch votes")
async def list_votes(request: Request):
    """The vote map: {userId: videoId}."""
    return await get_vote_map()


@app.post("/api/votes", response_model=SuccessResponse)
@limiter.limit(RATE_LIMIT_VOTE)
@handle_api_exceptions("cast_vote", "Failed to cast vote")
async def create_vote(request: Request, vote: VoteCreate):
    user_id = (vote.user_id or "").strip()
    video_id = (vote.video_id or "").strip()
    if not user_id or not video_id:
        raise HTTPException(status_code=400, detail="Missing userId or videoId")

    try:
        await cast_vote(user_id, video_id, vote.user_email)
    except VideoNotFoundError:
        raise HTTPException(status_code=404, detail="Video not found")
    except HiddenVideoError:
        raise HTTPException(status_code=400, detail="Cannot vote for a hidden video")

    VOTES_TOTAL.labels(VoteAction.CAST.value).inc()
    log_audit(
        AuditAction.VOTE_CAST,
        resource_type="vote",
        resource_id=user_id,
        details={"video_id": video_id},
        **_audit_context(request),
    )
    return SuccessResponse()


@app.delete("/api/votes/{user_id}", response_model=SuccessResponse)
@limiter.limit(RATE_LIMIT_VOTE)
@handle_api_exceptions("remove_vote", "Failed to remove vote")
async def delete_vote(request: Request, user_id: str):
    """Withdraw a user's vote. Succeeds whether or not one existed."""
    if await remove_vote(user_id):
        VOTES_TOTAL.labels(VoteAction.REMOVE.value).inc()
        log_audit(AuditAction.VOTE_REMOVE, resource_type="vote", resource_id=user_id, **_audit_context(request))
    return SuccessResponse()


@app.delete("/api/votes", response_model=ResetVotesResponse)
@limiter.limit(RATE_LIMIT_ADMIN)
@handle_api_exceptions("reset_votes", "Failed to reset votes")
async def delete_all_votes(request: Request, _: None = Depends(require_admin)):
    deleted = await reset_votes()
    VOTES_TOTAL.labels(VoteAction.RESET.value).inc()
    log_audit(AuditAction.VOTES_RESET, resource_type="vote", details={"deleted": deleted}, **_audit_context(request))
    return ResetVotesResponse(deleted=deleted)


@app.get("/api/admin/results", response_model=ResultsResponse)
@limiter.limit(RATE_LIMIT_ADMIN)
@handle_api_exceptions("fetch_results", "Failed to fetch results")
async def get_results(request: Request, _: None = Depends(require_admin)):
    """Leaderboard over every video, hidden ones included and flagged."""
    rows = await fetch_all_with_retry(videos.select().order_by(videos.c.created_at.desc(), videos.c.id))
    return tally(rows, await get_vote_map())


# Pre-built front-end, if one was deployed next to the API. Mounted last so
# that it never shadows an API route.
if WEB_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(WEB_DIR), html=True), name="web")


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
    uvicorn.run(app, host=HOST, port=PORT)
