"""
Public API - thumbnail and video uploads.

Run with: python -m api.public  (or uvicorn api.public:app --port 8091)
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.auth import authenticate
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    rate_limit_exceeded_handler,
)
from api.database import create_tables, database
from api.db_retry import DatabaseRetryableError
from api.errors import NotFoundError, register_error_handlers
from api.object_storage import create_object_store
from api.schemas import HealthResponse, VideoResponse
from api.thumbnail_storage import create_thumbnail_store
from api.upload_pipeline import parse_video_id, upload_thumbnail, upload_video
from api.video_store import get_video
from config import (
    ASSETS_ROOT,
    CORS_ALLOWED_ORIGINS,
    JWT_SECRET,
    MAX_THUMBNAIL_UPLOAD_SIZE,
    MAX_VIDEO_UPLOAD_SIZE,
    MEDIA_TOOL_TIMEOUT,
    PORT,
    PUBLIC_BASE_URL,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    S3_BUCKET,
    S3_REGION,
    SCRATCH_DIR,
    TEST_MODE,
    THUMBNAIL_STORAGE,
    VIDEO_STORAGE,
)
from worker.process_runner import SubprocessRunner

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if not JWT_SECRET and not TEST_MODE:
        raise RuntimeError("TUBELY_JWT_SECRET must be set")

    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure Redis: "
            "TUBELY_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )

    # Storage strategies are picked once here; tests replace them on app.state
    app.state.thumbnail_store = create_thumbnail_store(
        THUMBNAIL_STORAGE, assets_root=ASSETS_ROOT, base_url=PUBLIC_BASE_URL
    )
    app.state.object_store = create_object_store(
        VIDEO_STORAGE,
        bucket=S3_BUCKET,
        region=S3_REGION,
        assets_root=ASSETS_ROOT,
        base_url=PUBLIC_BASE_URL,
    )
    app.state.process_runner = SubprocessRunner(timeout=MEDIA_TOOL_TIMEOUT)
    app.state.scratch_dir = SCRATCH_DIR
    logger.info(f"Thumbnail storage: {THUMBNAIL_STORAGE}, video storage: {VIDEO_STORAGE}")

    create_tables()
    await database.connect()

    yield

    await database.disconnect()


app = FastAPI(title="Tubely", description="Video and thumbnail upload API", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
register_error_handlers(app)


@app.exception_handler(DatabaseRetryableError)
async def database_retryable_handler(request: Request, exc: DatabaseRetryableError):
    """Handle exhausted database retries with a 503 response."""
    logger.warning(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

# Filesystem thumbnails and local object storage
app.mount("/assets", StaticFiles(directory=str(ASSETS_ROOT), check_dir=False), name="assets")


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database or the scratch directory is unavailable.
    """
    result = await check_health()
    body = HealthResponse(
        status="healthy" if result["healthy"] else "unhealthy",
        checks=result["checks"],
        checked_at=result["checked_at"],
    )
    return JSONResponse(status_code=result["status_code"], content=body.model_dump())


@app.get("/videos/{video_id}", response_model=VideoResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_video_handler(request: Request, video_id: str) -> VideoResponse:
    """Get a single video."""
    video = await get_video(parse_video_id(video_id))
    if video is None:
        raise NotFoundError("Couldn't find video")
    return VideoResponse.from_record(video)


@app.get("/thumbnail/{video_id}")
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_thumbnail(request: Request, video_id: str) -> Response:
    """Serve the video's thumbnail bytes from whichever storage policy is active."""
    video = await get_video(parse_video_id(video_id))
    if video is None:
        raise NotFoundError("Couldn't find video")

    thumbnail = await request.app.state.thumbnail_store.load(video)
    if thumbnail is None:
        raise NotFoundError("Thumbnail not found")

    data, media_type = thumbnail
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "no-store"})


@app.post("/thumbnail/{video_id}", response_model=VideoResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_thumbnail_handler(request: Request, video_id: str) -> VideoResponse:
    """Upload a thumbnail image (multipart field ``thumbnail``, max 10MB)."""
    video_id = parse_video_id(video_id)
    user_id = authenticate(request.headers, JWT_SECRET)

    video = await upload_thumbnail(
        video_id,
        user_id,
        request.form,
        request.app.state.thumbnail_store,
        max_size=MAX_THUMBNAIL_UPLOAD_SIZE,
    )
    return VideoResponse.from_record(video)


@app.post("/video/{video_id}", response_model=VideoResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_video_handler(request: Request, video_id: str) -> VideoResponse:
    """
    Upload an MP4 (multipart field ``video``, max 1GB).

    The file is remuxed for fast start, classified by aspect ratio and
    published to object storage under ``<aspect>/<id>.mp4``.
    """
    video_id = parse_video_id(video_id)
    user_id = authenticate(request.headers, JWT_SECRET)

    state = request.app.state
    video = await upload_video(
        video_id,
        user_id,
        request.form,
        runner=state.process_runner,
        object_store=state.object_store,
        scratch_dir=state.scratch_dir,
        max_size=MAX_VIDEO_UPLOAD_SIZE,
    )
    return VideoResponse.from_record(video)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=PORT)
