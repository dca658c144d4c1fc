"""
Server-side thumbnail extraction for proxied uploads.

Browsers normally send a thumbnail captured from a <video> element. Uploads
from the CLI or scripts don't, so the server grabs one frame itself with
ffmpeg and returns it inline as a data: URL.
"""

import asyncio
import base64
import json
import logging
import math
import tempfile
from pathlib import Path
from typing import Any, Optional

from api.errors import truncate_error
from config import (
    ERROR_DETAIL_MAX_LENGTH,
    THUMBNAIL_FALLBACK_TIMESTAMP,
    THUMBNAIL_MAX_WIDTH,
    THUMBNAIL_TIMEOUT,
)

logger = logging.getLogger(__name__)

# Contest clips are short; anything longer than a day is corrupt metadata
MAX_DURATION_SECONDS = 24 * 60 * 60


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Raises:
        ValueError: If duration is missing, not a number, non-positive or too long
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


async def _run(cmd: list, timeout: float, what: str) -> bytes:
    process = await asyncio.create_subprocess_exec(
        *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"{what} timed out after {timeout}s")

    if process.returncode != 0:
        error_msg = truncate_error(stderr.decode("utf-8", errors="ignore"), ERROR_DETAIL_MAX_LENGTH)
        raise RuntimeError(f"{what} failed: {error_msg}")
    return stdout


async def get_video_info(input_path: Path, timeout: float = THUMBNAIL_TIMEOUT) -> dict:
    """Get width, height and duration using ffprobe.

    Duration is None when the container doesn't report a usable one
    (common for WebM recorded by browsers).

    Raises:
        RuntimeError: If ffprobe fails, times out, or finds no video stream
    """
    cmd = ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format", "-show_streams", str(input_path)]
    stdout = await _run(cmd, timeout, "ffprobe")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON: {e}") from e

    video_stream = next(
        (stream for stream in data.get("streams", []) if stream.get("codec_type") == "video"),
        None,
    )
    if not video_stream:
        raise RuntimeError("No video stream found")

    try:
        duration: Optional[float] = validate_duration(data.get("format", {}).get("duration"))
    except ValueError as e:
        logger.debug(f"Unusable duration for {input_path.name}: {e}")
        duration = None

    return {
        "width": int(video_stream.get("width", 0)),
        "height": int(video_stream.get("height", 0)),
        "duration": duration,
    }


def pick_timestamp(duration: Optional[float]) -> float:
    """Middle of the video, or THUMBNAIL_FALLBACK_TIMESTAMP when the duration is unknown."""
    if duration:
        return duration / 2
    return THUMBNAIL_FALLBACK_TIMESTAMP


async def generate_thumbnail(
    input_path: Path,
    output_path: Path,
    timestamp: float,
    max_width: int = THUMBNAIL_MAX_WIDTH,
    timeout: float = THUMBNAIL_TIMEOUT,
):
    """Capture one JPEG frame at timestamp, at most max_width pixels wide.

    Raises:
        RuntimeError: If ffmpeg fails or times out
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    # -ss before -i seeks to the nearest keyframe without decoding everything before it
    cmd = [
        "ffmpeg",
        "-y",
        "-ss",
        f"{timestamp:.3f}",
        "-i",
        str(input_path),
        "-vframes",
        "1",
        "-vf",
        f"scale='min({max_width},iw)':-2",
        "-q:v",
        "4",
        str(output_path),
    ]
    await _run(cmd, timeout, "Thumbnail generation")

    if not output_path.exists() or output_path.stat().st_size == 0:
        raise RuntimeError("Thumbnail generation produced no image")


def to_data_url(image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"


async def create_thumbnail_data_url(video_path: Path) -> str:
    """
    Probe a video and return one of its frames as a data:image/jpeg URL.

    Raises:
        RuntimeError: If probing or frame extraction fails
    """
    video_path = Path(video_path)
    info = await get_video_info(video_path)
    timestamp = pick_timestamp(info["duration"])

    with tempfile.TemporaryDirectory(prefix="votely-thumb-") as tmp:
        output_path = Path(tmp) / "thumbnail.jpg"
        try:
            await generate_thumbnail(video_path, output_path, timestamp)
        except RuntimeError:
            if timestamp == THUMBNAIL_FALLBACK_TIMESTAMP:
                raise
            # Reported duration can overshoot the last keyframe; retry near the start
            logger.info(f"Retrying thumbnail for {video_path.name} at {THUMBNAIL_FALLBACK_TIMESTAMP}s")
            await generate_thumbnail(video_path, output_path, THUMBNAIL_FALLBACK_TIMESTAMP)
        image_bytes = output_path.read_bytes()

    return to_data_url(image_bytes)
