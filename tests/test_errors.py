"""Tests for error message sanitization and truncation."""

from api.errors import (
    ERROR_MESSAGES,
    sanitize_error_message,
    truncate_error,
    truncate_string,
)


class TestTruncateString:
    def test_none(self):
        assert truncate_string(None, 10) is None

    def test_short_string_unchanged(self):
        assert truncate_string("short", 10) == "short"

    def test_exact_length_unchanged(self):
        assert truncate_string("a" * 10, 10) == "a" * 10

    def test_long_string_gets_suffix(self):
        result = truncate_string("a" * 20, 10)
        assert result == "aaaaaaa..."
        assert len(result) == 10

    def test_tiny_limit_has_no_suffix(self):
        assert truncate_string("abcdef", 2) == "ab"


class TestTruncateError:
    def test_collapses_whitespace(self):
        """Multi-line tool output becomes a single line."""
        assert truncate_error("ffmpeg failed\n  at frame 1\n", 100) == "ffmpeg failed at frame 1"

    def test_truncates(self):
        assert len(truncate_error("x " * 500, 50)) == 50

    def test_none(self):
        assert truncate_error(None, 10) is None


class TestSanitizeErrorMessage:
    """Internal details never reach API clients."""

    def test_none(self):
        assert sanitize_error_message(None) is None

    def test_bucket_errors(self):
        msg = "403 POST https://storage.googleapis.com/upload/b/votely-videos: bucket access denied"
        assert sanitize_error_message(msg, log_original=False) == ERROR_MESSAGES["storage"]

    def test_credentials_errors(self):
        msg = "you need a private key to sign credentials"
        assert sanitize_error_message(msg, log_original=False) == ERROR_MESSAGES["credentials"]

    def test_ffmpeg_errors(self):
        assert sanitize_error_message("ffmpeg exited with 1", log_original=False) == ERROR_MESSAGES["thumbnail"]

    def test_database_errors(self):
        msg = "UNIQUE constraint failed: votes.user_id"
        assert sanitize_error_message(msg, log_original=False) == ERROR_MESSAGES["database"]

    def test_paths_hidden(self):
        msg = "No such file or directory: /home/votely/data/uploads/x.mp4"
        assert sanitize_error_message(msg, log_original=False) == ERROR_MESSAGES["general"]

    def test_python_traceback_hidden(self):
        msg = 'File "/app/api/public.py", line 42, in create_video'
        assert sanitize_error_message(msg, log_original=False) == ERROR_MESSAGES["general"]

    def test_short_safe_message_passes_through(self):
        assert sanitize_error_message("Video not found", log_original=False) == "Video not found"

    def test_long_message_replaced(self):
        assert sanitize_error_message("x" * 200, log_original=False) == ERROR_MESSAGES["general"]

    def test_logs_original(self, caplog):
        with caplog.at_level("WARNING", logger="api.errors"):
            sanitize_error_message("something odd", context="video_id=v-1")
        assert "video_id=v-1" in caplog.text
        assert "something odd" in caplog.text
