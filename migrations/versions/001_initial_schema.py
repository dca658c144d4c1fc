"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Contest videos and the one-row-per-user votes table.
For databases created by create_tables(), use 'alembic stamp 001' to mark as current.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "videos",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("video_path", sa.Text, nullable=False),
        sa.Column("thumbnail_url", sa.Text, nullable=False, server_default=""),
        sa.Column("uploader_id", sa.String(255), nullable=False),
        sa.Column("uploader_name", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("is_hidden", sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_videos_created_at", "videos", ["created_at"])
    op.create_index("ix_videos_is_hidden", "videos", ["is_hidden"])

    # user_id as primary key: a user holds at most one vote
    op.create_table(
        "votes",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column(
            "video_id",
            sa.String(64),
            sa.ForeignKey("videos.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column("cast_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_votes_video_id", "votes", ["video_id"])


def downgrade() -> None:
    op.drop_index("ix_votes_video_id", table_name="votes")
    op.drop_table("votes")
    op.drop_index("ix_videos_is_hidden", table_name="videos")
    op.drop_index("ix_videos_created_at", table_name="videos")
    op.drop_table("videos")
