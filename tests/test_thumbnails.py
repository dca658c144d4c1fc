"""Tests for server-side thumbnail extraction (ffprobe/ffmpeg are mocked)."""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from api.thumbnails import (
    MAX_DURATION_SECONDS,
    create_thumbnail_data_url,
    generate_thumbnail,
    get_video_info,
    pick_timestamp,
    to_data_url,
    validate_duration,
)
from config import THUMBNAIL_FALLBACK_TIMESTAMP


def make_process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    process.returncode = returncode
    return process


def ffprobe_output(duration="12.5", streams=None) -> bytes:
    if streams is None:
        streams = [
            {"codec_type": "audio"},
            {"codec_type": "video", "width": 1080, "height": 1920},
        ]
    return json.dumps({"streams": streams, "format": {"duration": duration}}).encode()


class TestValidateDuration:
    def test_valid_values(self):
        assert validate_duration(12.5) == 12.5
        assert validate_duration("30") == 30.0

    @pytest.mark.parametrize("value", [None, "abc", 0, -1, float("nan"), float("inf"), MAX_DURATION_SECONDS + 1])
    def test_invalid_values(self, value):
        with pytest.raises(ValueError):
            validate_duration(value)


class TestPickTimestamp:
    def test_middle_of_video(self):
        assert pick_timestamp(10.0) == 5.0

    def test_unknown_duration(self):
        assert pick_timestamp(None) == THUMBNAIL_FALLBACK_TIMESTAMP


class TestToDataUrl:
    def test_jpeg(self):
        url = to_data_url(b"\xff\xd8\xff")
        assert url.startswith("data:image/jpeg;base64,")
        assert base64.b64decode(url.split(",", 1)[1]) == b"\xff\xd8\xff"


class TestGetVideoInfo:
    @pytest.mark.asyncio
    async def test_parses_probe_output(self, tmp_path):
        process = make_process(stdout=ffprobe_output())
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as exec_mock:
            info = await get_video_info(tmp_path / "in.mp4")

        assert info == {"width": 1080, "height": 1920, "duration": 12.5}
        assert exec_mock.call_args.args[0] == "ffprobe"

    @pytest.mark.asyncio
    async def test_unusable_duration_is_none(self, tmp_path):
        """Browser-recorded WebM often reports no duration."""
        process = make_process(stdout=ffprobe_output(duration="N/A"))
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            info = await get_video_info(tmp_path / "in.webm")

        assert info["duration"] is None

    @pytest.mark.asyncio
    async def test_no_video_stream(self, tmp_path):
        process = make_process(stdout=ffprobe_output(streams=[{"codec_type": "audio"}]))
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RuntimeError, match="No video stream"):
                await get_video_info(tmp_path / "in.mp4")

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path):
        process = make_process(stdout=b"not json")
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RuntimeError, match="invalid JSON"):
                await get_video_info(tmp_path / "in.mp4")

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path):
        process = make_process(stderr=b"moov atom not found\n", returncode=1)
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RuntimeError, match="moov atom not found"):
                await get_video_info(tmp_path / "in.mp4")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        async def hang():
            await asyncio.sleep(10)

        process = make_process()
        process.communicate = hang
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(RuntimeError, match="timed out"):
                await get_video_info(tmp_path / "in.mp4", timeout=0.05)

        process.kill.assert_called_once()


class TestGenerateThumbnail:
    @pytest.mark.asyncio
    async def test_builds_ffmpeg_command(self, tmp_path):
        output = tmp_path / "thumb.jpg"

        async def fake_exec(*cmd, **kwargs):
            output.write_bytes(b"jpeg")
            return make_process()

        with patch("api.thumbnails.asyncio.create_subprocess_exec", side_effect=fake_exec) as exec_mock:
            await generate_thumbnail(tmp_path / "in.mp4", output, 2.5, max_width=320)

        cmd = list(exec_mock.call_args.args)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-ss") + 1] == "2.500"
        assert "scale='min(320,iw)':-2" in cmd
        assert cmd[-1] == str(output)

    @pytest.mark.asyncio
    async def test_empty_output_is_an_error(self, tmp_path):
        output = tmp_path / "thumb.jpg"
        with patch("api.thumbnails.asyncio.create_subprocess_exec", AsyncMock(return_value=make_process())):
            with pytest.raises(RuntimeError, match="no image"):
                await generate_thumbnail(tmp_path / "in.mp4", output, 1.0)


class TestCreateThumbnailDataUrl:
    @pytest.mark.asyncio
    async def test_returns_data_url(self, tmp_path):
        async def fake_generate(input_path, output_path, timestamp, **kwargs):
            output_path.write_bytes(b"jpeg-bytes")

        with patch("api.thumbnails.get_video_info", AsyncMock(return_value={"width": 1, "height": 1, "duration": 8.0})):
            with patch("api.thumbnails.generate_thumbnail", side_effect=fake_generate) as gen_mock:
                url = await create_thumbnail_data_url(tmp_path / "in.mp4")

        assert url == to_data_url(b"jpeg-bytes")
        assert gen_mock.call_args.args[2] == 4.0

    @pytest.mark.asyncio
    async def test_retries_at_fallback_timestamp(self, tmp_path):
        """A seek past the last keyframe is retried near the start."""
        calls = []

        async def fake_generate(input_path, output_path, timestamp, **kwargs):
            calls.append(timestamp)
            if timestamp != THUMBNAIL_FALLBACK_TIMESTAMP:
                raise RuntimeError("Thumbnail generation produced no image")
            output_path.write_bytes(b"jpeg-bytes")

        with patch("api.thumbnails.get_video_info", AsyncMock(return_value={"width": 1, "height": 1, "duration": 20.0})):
            with patch("api.thumbnails.generate_thumbnail", side_effect=fake_generate):
                url = await create_thumbnail_data_url(tmp_path / "in.mp4")

        assert calls == [10.0, THUMBNAIL_FALLBACK_TIMESTAMP]
        assert url.startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_failure_at_fallback_is_raised(self, tmp_path):
        with patch("api.thumbnails.get_video_info", AsyncMock(return_value={"width": 1, "height": 1, "duration": None})):
            with patch("api.thumbnails.generate_thumbnail", AsyncMock(side_effect=RuntimeError("ffmpeg failed"))) as gen:
                with pytest.raises(RuntimeError):
                    await create_thumbnail_data_url(tmp_path / "in.mp4")

        assert gen.call_count == 1
