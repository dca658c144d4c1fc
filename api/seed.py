"""
Demo data: five sample videos and four votes.

Loaded at startup when VOTELY_SEED_DEMO_DATA is true and the videos table is
empty, or on demand with `votely seed` / `python -m api.seed`.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import sqlalchemy as sa

from api.database import configure_database, create_tables, database, videos, votes, write_transaction
from api.db_retry import fetch_val_with_retry

logger = logging.getLogger(__name__)

SAMPLE_BASE_URL = "https://storage.googleapis.com/gtv-videos-bucket/sample"

# (id, title, description, sample file, thumbnail seed/size, uploader id, uploader name)
DEMO_VIDEOS = [
    (
        "v1",
        "Morning Routine in Tokyo",
        "A peaceful morning walk through the streets of Shibuya before the crowd arrives. "
        "The lighting was absolutely perfect today.",
        "ForBiggerBlazes.mp4",
        "tokyo/400/600",
        "u2",
        "Sarah Jenkins",
    ),
    (
        "v2",
        "Homemade Pasta Tutorial",
        "Learning to make Tagliatelle from scratch. Flour everywhere but worth it! Vote if you are hungry.",
        "ForBiggerJoyrides.mp4",
        "pasta/400/500",
        "u3",
        "Chef Mike",
    ),
    (
        "v3",
        "My Cat Playing Piano",
        "Whiskers discovered the synthesizer today. Is this the next Mozart? Probably not, but it is cute.",
        "ForBiggerMeltdowns.mp4",
        "cat/400/400",
        "u4",
        "CatLover99",
    ),
    (
        "v4",
        "Hiking the Swiss Alps",
        "The view from the top of the ridge. You can see three different countries from here.",
        "Sintel.mp4",
        "hike/400/700",
        "u5",
        "Adventure Tom",
    ),
    (
        "v5",
        "Abstract Art Timelapse",
        "Acrylic pouring technique. Watch the colors blend.",
        "TearsOfSteel.mp4",
        "art/400/450",
        "u6",
        "ArtByAnna",
    ),
]

DEMO_VOTES = {
    "u2": "v2",
    "u3": "v1",
    "u4": "v1",
    "u5": "v5",
}


def demo_video_rows(now: datetime) -> list:
    rows = []
    for index, (video_id, title, description, sample, thumb, uploader_id, uploader_name) in enumerate(DEMO_VIDEOS):
        rows.append(
            {
                "id": video_id,
                "title": title,
                "description": description,
                "video_path": f"{SAMPLE_BASE_URL}/{sample}",
                "thumbnail_url": f"https://picsum.photos/seed/{thumb}",
                "uploader_id": uploader_id,
                "uploader_name": uploader_name,
                # v1 newest, then 1000s apart
                "created_at": now - timedelta(seconds=1000 * (index + 1)),
                "is_hidden": False,
            }
        )
    return rows


async def seed_demo_data(force: bool = False) -> bool:
    """
    Insert the demo videos and votes.

    Does nothing (and returns False) when any video exists, unless force is set,
    in which case existing demo ids are left alone and only missing rows are added.
    """
    existing = await fetch_val_with_retry(sa.select(sa.func.count()).select_from(videos))
    if existing and not force:
        logger.info(f"Skipping demo data: {existing} videos already present")
        return False

    now = datetime.now(timezone.utc)
    async with write_transaction():
        present = {row["id"] for row in await database.fetch_all(sa.select(videos.c.id))}
        for row in demo_video_rows(now):
            if row["id"] not in present:
                await database.execute(videos.insert().values(**row))

        voted = {row["user_id"] for row in await database.fetch_all(sa.select(votes.c.user_id))}
        for user_id, video_id in DEMO_VOTES.items():
            if user_id not in voted:
                await database.execute(
                    votes.insert().values(user_id=user_id, video_id=video_id, cast_at=now)
                )

    logger.info(f"Seeded {len(DEMO_VIDEOS)} demo videos and {len(DEMO_VOTES)} votes")
    return True


async def load_demo_data() -> bool:
    """Create the schema if needed and load the demo data into DATABASE_URL."""
    create_tables()
    await database.connect()
    try:
        await configure_database()
        seeded = await seed_demo_data(force=True)
    finally:
        await database.disconnect()
    return seeded


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    seeded = asyncio.run(load_demo_data())
    print("Demo data loaded." if seeded else "Demo data already present.")
