"""Tests for the handle_api_exceptions decorator."""

import pytest
from fastapi import HTTPException
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.db_retry import DatabaseRetryableError
from api.exception_utils import handle_api_exceptions


class TestHandleApiExceptions:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        @handle_api_exceptions("op")
        async def ok():
            return {"ok": True}

        assert await ok() == {"ok": True}

    @pytest.mark.asyncio
    async def test_http_exception_passes_through(self):
        """Deliberate 4xx responses are not rewritten."""

        @handle_api_exceptions("op", "Failed")
        async def not_found():
            raise HTTPException(status_code=404, detail="Video not found")

        with pytest.raises(HTTPException) as exc_info:
            await not_found()
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == "Video not found"

    @pytest.mark.asyncio
    async def test_starlette_http_exception_passes_through(self):
        """Starlette raises its own HTTPException for malformed form bodies."""

        @handle_api_exceptions("op", "Failed")
        async def bad_form():
            raise StarletteHTTPException(status_code=400, detail="Malformed multipart")

        with pytest.raises(StarletteHTTPException) as exc_info:
            await bad_form()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_database_retryable_error_passes_through(self):
        @handle_api_exceptions("op", "Failed")
        async def locked():
            raise DatabaseRetryableError("gave up")

        with pytest.raises(DatabaseRetryableError):
            await locked()

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_generic_500(self, caplog):
        @handle_api_exceptions("cast_vote", "Failed to cast vote")
        async def broken():
            raise RuntimeError("secret internal detail /home/votely")

        with caplog.at_level("ERROR", logger="api.exception_utils"):
            with pytest.raises(HTTPException) as exc_info:
                await broken()

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "Failed to cast vote"
        assert "cast_vote" in caplog.text

    @pytest.mark.asyncio
    async def test_custom_status_code(self):
        @handle_api_exceptions("op", "Storage down", status_code=503)
        async def broken():
            raise OSError("disk gone")

        with pytest.raises(HTTPException) as exc_info:
            await broken()
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_log_errors_false(self, caplog):
        @handle_api_exceptions("quiet_op", log_errors=False)
        async def broken():
            raise RuntimeError("boom")

        with caplog.at_level("ERROR", logger="api.exception_utils"):
            with pytest.raises(HTTPException):
                await broken()
        assert "quiet_op" not in caplog.text

    def test_preserves_metadata(self):
        @handle_api_exceptions("op")
        async def documented():
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."
