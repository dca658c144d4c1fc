"""
Database migration tests.

The schema built by Alembic must match the one create_tables() builds from
api.database.metadata, since either can be used to set up a deployment.
"""

from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config

REPO_ROOT = Path(__file__).parent.parent


@pytest.fixture
def empty_db_url(tmp_path, monkeypatch):
    import config

    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    # env.py always takes the URL from config
    monkeypatch.setattr(config, "DATABASE_URL", url)
    return url


@pytest.fixture
def alembic_config(empty_db_url):
    # No ini file: fileConfig() would reconfigure logging for the rest of the session
    cfg = Config()
    cfg.set_main_option("script_location", str(REPO_ROOT / "migrations"))
    return cfg


class TestMigrations:
    def test_upgrade_head(self, alembic_config, empty_db_url):
        command.upgrade(alembic_config, "head")

        inspector = sa.inspect(sa.create_engine(empty_db_url))
        assert {"videos", "votes", "alembic_version"} <= set(inspector.get_table_names())

    def test_schema_matches_metadata(self, alembic_config, empty_db_url):
        from api.database import metadata

        command.upgrade(alembic_config, "head")

        inspector = sa.inspect(sa.create_engine(empty_db_url))
        for table in metadata.sorted_tables:
            migrated = {column["name"] for column in inspector.get_columns(table.name)}
            assert migrated == {column.name for column in table.columns}, table.name

            migrated_indexes = {index["name"] for index in inspector.get_indexes(table.name)}
            assert migrated_indexes == {index.name for index in table.indexes}, table.name

    def test_votes_keyed_on_user(self, alembic_config, empty_db_url):
        command.upgrade(alembic_config, "head")

        inspector = sa.inspect(sa.create_engine(empty_db_url))
        assert inspector.get_pk_constraint("votes")["constrained_columns"] == ["user_id"]
        foreign_keys = inspector.get_foreign_keys("votes")
        assert foreign_keys[0]["referred_table"] == "videos"

    def test_downgrade_base(self, alembic_config, empty_db_url):
        command.upgrade(alembic_config, "head")
        command.downgrade(alembic_config, "base")

        inspector = sa.inspect(sa.create_engine(empty_db_url))
        assert "videos" not in inspector.get_table_names()
        assert "votes" not in inspector.get_table_names()

    def test_one_vote_per_user_enforced(self, alembic_config, empty_db_url):
        command.upgrade(alembic_config, "head")
        engine = sa.create_engine(empty_db_url)

        with engine.begin() as conn:
            conn.execute(
                sa.text(
                    "INSERT INTO videos (id, title, video_path, uploader_id, uploader_name) "
                    "VALUES ('v1', 't', '/uploads/a.mp4', 'u', 'U')"
                )
            )
            conn.execute(sa.text("INSERT INTO votes (user_id, video_id) VALUES ('sarah', 'v1')"))

        with pytest.raises(sa.exc.IntegrityError):
            with engine.begin() as conn:
                conn.execute(sa.text("INSERT INTO votes (user_id, video_id) VALUES ('sarah', 'v1')"))
