#!/usr/bin/env python3
"""
Votely CLI - command line client for the contest API.
"""

import argparse
import asyncio
import functools
import mimetypes
import os
import sys
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.errors import truncate_error
from config import (
    ADMIN_API_SECRET,
    ALLOWED_VIDEO_CONTENT_TYPES,
    ALLOWED_VIDEO_CONTENT_TYPES_STR,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
    PORT,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VOTELY_API_TIMEOUT", "30"))

# Upload timeout in seconds (default 1 hour)
UPLOAD_TIMEOUT = int(os.getenv("VOTELY_UPLOAD_TIMEOUT", "3600"))

_default_api_url = f"http://localhost:{PORT}"
API_BASE = os.getenv("VOTELY_API_URL", _default_api_url).rstrip("/") + "/api"

UPLOAD_CHUNK_SIZE = 1024 * 1024

# mimetypes doesn't know .webm on every platform
VIDEO_EXTENSIONS = {".mp4": "video/mp4", ".webm": "video/webm", ".mov": "video/quicktime"}


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


class ProgressFileWrapper:
    """Wrapper for file objects that reports upload progress."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        # Empty reads at EOF don't advance progress
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def __iter__(self):
        while True:
            chunk = self.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()

    def close(self):
        """Does not close the underlying file; it's managed by the caller."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        pass


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, turning API errors into CLIError.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def guess_content_type(file_path: Path) -> str:
    content_type = VIDEO_EXTENSIONS.get(file_path.suffix.lower())
    if content_type is None:
        content_type, _ = mimetypes.guess_type(file_path.name)
    if content_type not in ALLOWED_VIDEO_CONTENT_TYPES:
        raise CLIError(f"Unsupported video type for {file_path.name}. Allowed: {ALLOWED_VIDEO_CONTENT_TYPES_STR}")
    return content_type


def validate_file(file_path: Path) -> int:
    """
    Validate file exists, is readable, non-empty and within MAX_UPLOAD_SIZE.

    Returns:
        int: File size in bytes

    Raises:
        CLIError: If any check fails
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")

    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")

    if file_size > MAX_UPLOAD_SIZE:
        max_size_mb = MAX_UPLOAD_SIZE / (1024 * 1024)
        raise CLIError(
            f"File too large ({file_size / (1024 * 1024):.1f} MB). "
            f"Maximum upload size is {max_size_mb:.0f} MB"
        )

    return file_size


def get_admin_headers() -> dict:
    """Get headers for admin API requests."""
    headers = {}
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def handle_auth_error(response) -> None:
    """Exit with a helpful message on 401/403 from a moderation endpoint."""
    if response.status_code == 401:
        print("Error: Authentication required.")
        print("Moderation commands need VOTELY_ADMIN_API_SECRET to be set.")
        sys.exit(1)
    elif response.status_code == 403:
        print("Error: Authentication failed - invalid secret.")
        print("Check that VOTELY_ADMIN_API_SECRET matches the server configuration.")
        sys.exit(1)


def confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def cli_command(func):
    """Map connection problems and CLIError to a message and exit status 1."""

    @functools.wraps(func)
    def wrapper(args):
        try:
            return func(args)
        except httpx.ConnectError:
            print(f"Error: Could not connect to the API at {API_BASE}")
            print("Make sure the server is running, or set VOTELY_API_URL.")
            sys.exit(1)
        except httpx.TimeoutException:
            print(f"Error: Request timed out while talking to {API_BASE}")
            sys.exit(1)
        except CLIError as e:
            print(f"Error: {e}")
            sys.exit(1)

    return wrapper


def _upload_progress() -> Progress:
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    )


def _upload_direct(file_path: Path, file_size: int, content_type: str, data: dict) -> dict:
    """Signed URL flow: ask for a URL, PUT the bytes to the bucket, then register the metadata."""
    response = httpx.get(
        f"{API_BASE}/upload-url",
        params={"filename": file_path.name, "contentType": content_type},
        timeout=DEFAULT_API_TIMEOUT,
    )
    upload = safe_json_response(response, "Could not get an upload URL")

    with _upload_progress() as progress:
        task_id = progress.add_task("Uploading to bucket...", total=file_size)
        with open(file_path, "rb") as f:
            wrapped_file = ProgressFileWrapper(f, progress, task_id)
            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                put_response = client.put(
                    upload["url"],
                    content=iter(wrapped_file),
                    headers={"Content-Type": content_type, "Content-Length": str(file_size)},
                )
    if not put_response.is_success:
        raise CLIError(
            f"Bucket upload failed ({put_response.status_code}): "
            f"{truncate_error(put_response.text, ERROR_SUMMARY_MAX_LENGTH)}"
        )

    response = httpx.post(
        f"{API_BASE}/videos",
        json={**data, "videoFilename": upload["filename"]},
        timeout=DEFAULT_API_TIMEOUT,
    )
    return safe_json_response(response)


def _upload_proxy(file_path: Path, file_size: int, content_type: str, data: dict) -> dict:
    with _upload_progress() as progress:
        task_id = progress.add_task("Uploading...", total=file_size)
        with open(file_path, "rb") as f:
            wrapped_file = ProgressFileWrapper(f, progress, task_id)
            files = {"video": (file_path.name, wrapped_file, content_type)}
            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                response = client.post(f"{API_BASE}/videos", files=files, data=data)
    return safe_json_response(response)


@cli_command
def cmd_upload(args):
    """Upload a video."""
    file_path = Path(args.file)
    file_size = validate_file(file_path)
    content_type = guess_content_type(file_path)

    title = args.title or file_path.stem.replace("-", " ").replace("_", " ").title()

    print(f"Uploading: {file_path.name}")
    print(f"Title: {title}")

    data = {
        "title": title,
        "description": args.description or "",
        "uploaderId": args.uploader_id,
        "uploaderName": args.uploader_name,
    }
    if args.thumbnail_url:
        data["thumbnailUrl"] = args.thumbnail_url

    try:
        if args.direct:
            video = _upload_direct(file_path, file_size, content_type, data)
        else:
            video = _upload_proxy(file_path, file_size, content_type, data)
    except httpx.TimeoutException:
        print(f"Error: Upload timed out (exceeded {UPLOAD_TIMEOUT}s timeout)")
        print("You can increase the timeout with the VOTELY_UPLOAD_TIMEOUT environment variable")
        sys.exit(1)

    print("Success! Video submitted.")
    print(f"  ID: {video['id']}")
    print(f"  URL: {video['videoUrl']}")


def _short(text: str, width: int) -> str:
    return text[: width - 2] + ".." if len(text) > width else text


@cli_command
def cmd_list(args):
    """List videos with their vote counts."""
    params = {"includeHidden": "true"} if args.all else {}
    headers = get_admin_headers() if args.all else {}
    response = httpx.get(f"{API_BASE}/videos", params=params, headers=headers, timeout=DEFAULT_API_TIMEOUT)
    handle_auth_error(response)
    videos_list = safe_json_response(response)

    vote_map = safe_json_response(httpx.get(f"{API_BASE}/votes", timeout=DEFAULT_API_TIMEOUT))
    counts = {}
    for video_id in vote_map.values():
        counts[video_id] = counts.get(video_id, 0) + 1

    if not videos_list:
        print("No videos found.")
        return

    print(f"{'ID':<36} {'Votes':<6} {'Hidden':<7} {'Title':<40} {'Uploader':<20}")
    print("-" * 112)
    for v in videos_list:
        hidden = "yes" if v.get("isHidden") else "-"
        print(
            f"{v['id']:<36} {counts.get(v['id'], 0):<6} {hidden:<7} "
            f"{_short(v['title'], 40):<40} {_short(v['uploaderName'], 20):<20}"
        )


@cli_command
def cmd_vote(args):
    """Cast (or move) a vote."""
    payload = {"userId": args.user_id, "videoId": args.video_id}
    if args.email:
        payload["userEmail"] = args.email
    response = httpx.post(f"{API_BASE}/votes", json=payload, timeout=DEFAULT_API_TIMEOUT)
    safe_json_response(response)
    print(f"{args.user_id} voted for {args.video_id}.")


@cli_command
def cmd_unvote(args):
    response = httpx.delete(f"{API_BASE}/votes/{args.user_id}", timeout=DEFAULT_API_TIMEOUT)
    safe_json_response(response)
    print(f"Vote for {args.user_id} removed.")


def _set_visibility(video_id: str, is_hidden: bool) -> None:
    response = httpx.patch(
        f"{API_BASE}/videos/{video_id}/visibility",
        json={"isHidden": is_hidden},
        headers=get_admin_headers(),
        timeout=DEFAULT_API_TIMEOUT,
    )
    handle_auth_error(response)
    safe_json_response(response)


@cli_command
def cmd_hide(args):
    _set_visibility(args.video_id, True)
    print(f"Video {args.video_id} hidden.")


@cli_command
def cmd_unhide(args):
    _set_visibility(args.video_id, False)
    print(f"Video {args.video_id} visible.")


@cli_command
def cmd_delete(args):
    """Delete a video, its votes and its media."""
    if not confirm(f"Delete video {args.video_id} and all of its votes?", args.yes):
        print("Aborted.")
        return
    response = httpx.delete(f"{API_BASE}/videos/{args.video_id}", headers=get_admin_headers(), timeout=DEFAULT_API_TIMEOUT)
    handle_auth_error(response)
    safe_json_response(response)
    print(f"Video {args.video_id} deleted.")


@cli_command
def cmd_results(args):
    """Print the leaderboard."""
    response = httpx.get(f"{API_BASE}/admin/results", headers=get_admin_headers(), timeout=DEFAULT_API_TIMEOUT)
    handle_auth_error(response)
    results = safe_json_response(response)

    print(f"Total votes: {results['totalVotes']}")
    if not results["results"]:
        print("No videos found.")
        return

    print(f"{'#':<4} {'Votes':<6} {'Title':<40} {'Uploader':<20} {'Hidden':<6}")
    print("-" * 80)
    for rank, r in enumerate(results["results"], start=1):
        hidden = "yes" if r["isHidden"] else "-"
        print(f"{rank:<4} {r['voteCount']:<6} {_short(r['title'], 40):<40} {_short(r['uploaderName'], 20):<20} {hidden:<6}")


@cli_command
def cmd_reset_votes(args):
    if not confirm("Delete ALL votes? This cannot be undone.", args.yes):
        print("Aborted.")
        return
    response = httpx.delete(f"{API_BASE}/votes", headers=get_admin_headers(), timeout=DEFAULT_API_TIMEOUT)
    handle_auth_error(response)
    result = safe_json_response(response)
    print(f"Deleted {result['deleted']} votes.")


@cli_command
def cmd_seed(args):
    """Load the demo videos and votes straight into the configured database."""
    from api.seed import load_demo_data

    try:
        seeded = asyncio.run(load_demo_data())
    except Exception as e:
        raise CLIError(f"Could not load demo data: {truncate_error(str(e), ERROR_DETAIL_MAX_LENGTH)}")
    print("Demo data loaded." if seeded else "Demo data already present.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="votely", description="Votely CLI - manage a video voting contest")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.add_argument("--all", action="store_true", help="Include hidden videos (admin)")
    list_parser.set_defaults(func=cmd_list)

    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    upload_parser.add_argument("-d", "--description", help="Video description")
    upload_parser.add_argument("--uploader-id", required=True, help="Uploader's user id")
    upload_parser.add_argument("--uploader-name", required=True, help="Uploader's display name")
    upload_parser.add_argument("--thumbnail-url", help="Thumbnail URL (default: generated by the server)")
    upload_parser.add_argument(
        "--direct", action="store_true", help="Upload straight to the bucket with a signed URL"
    )
    upload_parser.set_defaults(func=cmd_upload)

    vote_parser = subparsers.add_parser("vote", help="Cast or move a vote")
    vote_parser.add_argument("user_id", help="Voter's user id")
    vote_parser.add_argument("video_id", help="Video to vote for")
    vote_parser.add_argument("--email", help="Voter's email")
    vote_parser.set_defaults(func=cmd_vote)

    unvote_parser = subparsers.add_parser("unvote", help="Remove a user's vote")
    unvote_parser.add_argument("user_id", help="Voter's user id")
    unvote_parser.set_defaults(func=cmd_unvote)

    hide_parser = subparsers.add_parser("hide", help="Hide a video from the feed")
    hide_parser.add_argument("video_id", help="Video ID")
    hide_parser.set_defaults(func=cmd_hide)

    unhide_parser = subparsers.add_parser("unhide", help="Show a hidden video again")
    unhide_parser.add_argument("video_id", help="Video ID")
    unhide_parser.set_defaults(func=cmd_unhide)

    del_parser = subparsers.add_parser("delete", help="Delete a video")
    del_parser.add_argument("video_id", help="Video ID to delete")
    del_parser.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")
    del_parser.set_defaults(func=cmd_delete)

    results_parser = subparsers.add_parser("results", help="Show the leaderboard")
    results_parser.set_defaults(func=cmd_results)

    reset_parser = subparsers.add_parser("reset-votes", help="Delete every vote")
    reset_parser.add_argument("-y", "--yes", action="store_true", help="Don't ask for confirmation")
    reset_parser.set_defaults(func=cmd_reset_votes)

    seed_parser = subparsers.add_parser("seed", help="Load demo videos and votes into the database")
    seed_parser.set_defaults(func=cmd_seed)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
