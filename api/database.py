from contextlib import asynccontextmanager
from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with SQLite or PostgreSQL
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def is_sqlite_url(url: str) -> bool:
    return str(url).startswith("sqlite")


async def configure_database():
    """
    Configure database-specific settings after connection.

    SQLite only enforces foreign keys when the pragma is set on the connection.
    PostgreSQL always enforces them, so this is a no-op there.
    """
    if is_sqlite_url(database.url):
        await database.execute("PRAGMA foreign_keys = ON")


@asynccontextmanager
async def write_transaction():
    """
    Hold one connection for the current task and open a transaction on it.

    The SQLite backend opens a fresh connection per task, and the foreign_keys
    pragma is ignored once a transaction has begun, so it is set here, on the
    held connection, before BEGIN. database.* calls made inside the block run
    on that same connection.
    """
    async with database.connection() as connection:
        if is_sqlite_url(database.url):
            await connection.execute("PRAGMA foreign_keys = ON")
        async with connection.transaction():
            yield connection


# Contest submissions
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),  # "v-<hex>"
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    # Public URL of the media: bucket URL or /uploads/<file>
    sa.Column("video_path", sa.Text, nullable=False),
    # Image URL or data: URL produced by the client (or the server fallback)
    sa.Column("thumbnail_url", sa.Text, nullable=False, default=""),
    sa.Column("uploader_id", sa.String(255), nullable=False),
    sa.Column("uploader_name", sa.String(255), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("is_hidden", sa.Boolean, nullable=False, default=False),
    sa.Index("ix_videos_created_at", "created_at"),
    sa.Index("ix_videos_is_hidden", "is_hidden"),
)

# One row per user: the primary key on user_id is what enforces one vote per person.
# Casting a second vote is an upsert that moves the row to the new video.
votes = sa.Table(
    "votes",
    metadata,
    sa.Column("user_id", sa.String(255), primary_key=True),
    sa.Column("video_id", sa.String(64), sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_email", sa.String(255), nullable=True),
    sa.Column("cast_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Index("ix_votes_video_id", "video_id"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
