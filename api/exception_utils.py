"""
Standardized exception handling for API endpoints.

Every endpoint that touches the database or storage wraps its body with
handle_api_exceptions so that unexpected failures reach the client as a fixed,
per-operation message ("Failed to cast vote") instead of a stack trace.
"""

import functools
import logging
from typing import Any, Callable, TypeVar

from fastapi import HTTPException
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.db_retry import DatabaseRetryableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def handle_api_exceptions(
    operation_name: str,
    error_detail: str = "Internal server error",
    status_code: int = 500,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for standardized exception handling in API endpoints.

    - HTTPExceptions (FastAPI or Starlette, e.g. malformed multipart) are re-raised
    - DatabaseRetryableError is re-raised so the app-level handler can answer 503
    - Anything else is logged with its traceback and converted to status_code
      with error_detail

    Example:
        @handle_api_exceptions("fetch_videos", "Failed to fetch videos")
        async def list_videos(...):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except (StarletteHTTPException, DatabaseRetryableError):
                raise
            except Exception as e:
                if log_errors:
                    logger.exception(f"Unexpected error in {operation_name}: {e}")
                raise HTTPException(status_code=status_code, detail=error_detail) from e
        return wrapper
    return decorator
