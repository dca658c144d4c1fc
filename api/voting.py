"""
Vote storage and tallying.

Each user holds at most one vote. The votes table is keyed on user_id and a
vote is written with a single upsert, so casting a new vote moves the old one
rather than adding a second row, even when two requests race.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import sqlalchemy as sa

from api.database import database, videos, votes, write_transaction
from api.db_retry import fetch_all_with_retry, with_db_retry
from api.schemas import ResultsResponse, VideoResult

logger = logging.getLogger(__name__)

# Valid on SQLite >= 3.24 and PostgreSQL >= 9.5
UPSERT_VOTE_SQL = """
INSERT INTO votes (user_id, video_id, user_email, cast_at)
VALUES (:user_id, :video_id, :user_email, :cast_at)
ON CONFLICT (user_id) DO UPDATE SET
    video_id = excluded.video_id,
    user_email = excluded.user_email,
    cast_at = excluded.cast_at
"""


class VoteRejectedError(Exception):
    """The target video cannot take a vote."""


class VideoNotFoundError(VoteRejectedError):
    pass


class HiddenVideoError(VoteRejectedError):
    pass


async def get_vote_map() -> Dict[str, str]:
    """Return {user_id: video_id} for every vote."""
    rows = await fetch_all_with_retry(sa.select(votes.c.user_id, votes.c.video_id))
    return {row["user_id"]: row["video_id"] for row in rows}


@with_db_retry()
async def cast_vote(user_id: str, video_id: str, user_email: Optional[str] = None) -> None:
    """
    Record user_id's vote for video_id, replacing any earlier vote by the same user.

    The video is read with a share lock in the same transaction as the upsert,
    so a concurrent delete or hide either waits for the vote or is seen by it.

    Raises:
        VideoNotFoundError: no such video
        HiddenVideoError: the video is hidden
    """
    async with write_transaction():
        target = await database.fetch_one(
            sa.select(videos.c.is_hidden).where(videos.c.id == video_id).with_for_update(read=True)
        )
        if target is None:
            raise VideoNotFoundError(video_id)
        if target["is_hidden"]:
            raise HiddenVideoError(video_id)

        query = sa.text(UPSERT_VOTE_SQL).bindparams(
            # Typed so SQLite stores it in the same format as the Table's DateTime column
            sa.bindparam("cast_at", value=datetime.now(timezone.utc), type_=sa.DateTime(timezone=True)),
            user_id=user_id,
            video_id=video_id,
            user_email=user_email,
        )
        await database.execute(query)
    logger.info(f"Vote cast: user={user_id} video={video_id}")


@with_db_retry()
async def remove_vote(user_id: str) -> bool:
    """Delete user_id's vote. Returns False when they had none."""
    async with write_transaction():
        existing = await database.fetch_val(sa.select(votes.c.user_id).where(votes.c.user_id == user_id))
        if existing is None:
            return False
        await database.execute(votes.delete().where(votes.c.user_id == user_id))
    logger.info(f"Vote removed: user={user_id}")
    return True


@with_db_retry()
async def reset_votes() -> int:
    """Delete every vote and return how many there were."""
    async with write_transaction():
        deleted = await database.fetch_val(sa.select(sa.func.count()).select_from(votes)) or 0
        await database.execute(votes.delete())
    logger.warning(f"All votes reset ({deleted} deleted)")
    return deleted


def tally(video_rows: Iterable, vote_map: Dict[str, str]) -> ResultsResponse:
    """
    Build the leaderboard.

    video_rows is an iterable of rows or dicts with id, title, uploader_name and
    is_hidden, in feed order. Results are sorted by vote count, highest
    first; ties keep feed order. Votes for unknown videos count towards
    total_votes only.
    """
    voters_by_video: Dict[str, List[str]] = {}
    for user_id, video_id in vote_map.items():
        voters_by_video.setdefault(video_id, []).append(user_id)

    results = [
        VideoResult(
            video_id=video["id"],
            title=video["title"],
            uploader_name=video["uploader_name"],
            is_hidden=bool(video["is_hidden"]),
            vote_count=len(voters_by_video.get(video["id"], [])),
            voters=sorted(voters_by_video.get(video["id"], [])),
        )
        for video in video_rows
    ]
    # sorted() is stable, so equal counts stay in feed order
    results = sorted(results, key=lambda r: r.vote_count, reverse=True)

    return ResultsResponse(total_votes=len(vote_map), results=results)
