"""
Pytest fixtures for Votely tests.
Provides per-test SQLite databases, storage directories, test clients and a
fake Cloud Storage bucket.

SQLite is used so the suite runs without a database server; the same queries
run unchanged on PostgreSQL.
"""

import importlib
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa

# Must be set BEFORE importing config: no directory creation, no GCS, no file logs
os.environ["VOTELY_TEST_MODE"] = "1"
os.environ["VOTELY_GCS_BUCKET_NAME"] = ""
os.environ["VOTELY_RATE_LIMIT_ENABLED"] = "false"
os.environ["VOTELY_AUDIT_LOG_ENABLED"] = "false"
os.environ["VOTELY_SERVER_THUMBNAILS_ENABLED"] = "false"

from api.database import metadata  # noqa: E402

TEST_ADMIN_SECRET = "test-admin-secret"
TEST_BUCKET_NAME = "votely-test-bucket"

# Modules that capture config values or the database at import time, in dependency order
APP_MODULES = (
    "api.database",
    "api.storage",
    "api.common",
    "api.voting",
    "api.seed",
    "api.public",
)


def _reload_app_modules() -> None:
    for name in APP_MODULES:
        if name in sys.modules:
            importlib.reload(sys.modules[name])
        else:
            importlib.import_module(name)


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create test storage directories."""
    uploads_dir = tmp_path / "uploads"
    temp_dir = tmp_path / "temp"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    temp_dir.mkdir(parents=True, exist_ok=True)
    return {"uploads": uploads_dir, "temp": temp_dir}


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """A fresh SQLite database file with all tables created."""
    db_url = f"sqlite:///{tmp_path / 'votely_test.db'}"
    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()
    return db_url


@pytest.fixture(scope="function")
def app_config(test_storage: dict, test_db_url: str, tmp_path: Path, monkeypatch) -> dict:
    """Point config at the test database and directories, then reload the app modules."""
    import config

    monkeypatch.setattr(config, "DATABASE_URL", test_db_url)
    monkeypatch.setattr(config, "UPLOADS_DIR", test_storage["uploads"])
    monkeypatch.setattr(config, "TEMP_DIR", test_storage["temp"])
    monkeypatch.setattr(config, "WEB_DIR", tmp_path / "no-web-build")
    monkeypatch.setattr(config, "GCS_BUCKET_NAME", "")
    monkeypatch.setattr(config, "ADMIN_API_SECRET", "")
    monkeypatch.setattr(config, "SEED_DEMO_DATA", False)
    monkeypatch.setattr(config, "SERVER_THUMBNAILS_ENABLED", False)
    monkeypatch.setattr(config, "RATE_LIMIT_ENABLED", False)

    _reload_app_modules()

    return {"database_url": test_db_url, **test_storage}


@pytest.fixture(scope="function")
async def db(app_config: dict):
    """The app's Database instance, connected to the test database."""
    from api import database as db_module

    await db_module.database.connect()
    await db_module.configure_database()
    yield db_module.database
    await db_module.database.disconnect()


@pytest.fixture(scope="function")
def client(app_config: dict):
    """
    Test client for the API in local storage mode.
    The app manages its own database connection through its lifespan.
    """
    from fastapi.testclient import TestClient

    from api.public import app

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def admin_secret(client, monkeypatch) -> str:
    """Require X-Admin-Secret on moderation endpoints for this test."""
    import api.common

    monkeypatch.setattr(api.common, "ADMIN_API_SECRET", TEST_ADMIN_SECRET)
    return TEST_ADMIN_SECRET


@pytest.fixture(scope="function")
def admin_headers(admin_secret: str) -> dict:
    return {"X-Admin-Secret": admin_secret}


def make_fake_bucket(name: str = TEST_BUCKET_NAME) -> MagicMock:
    """
    A stand-in for google.cloud.storage.Bucket.

    bucket.blob(name) returns the same MagicMock for the same name, so tests can
    inspect calls made on a blob after the code under test is done with it.
    """
    bucket = MagicMock(name="bucket")
    bucket.name = name
    bucket.exists.return_value = True
    blobs = {}

    def blob(blob_name):
        if blob_name not in blobs:
            fake = MagicMock(name=f"blob:{blob_name}")
            fake.name = blob_name
            fake.generate_signed_url.return_value = (
                f"https://storage.googleapis.com/{name}/{blob_name}?X-Goog-Signature=test"
            )
            blobs[blob_name] = fake
        return blobs[blob_name]

    bucket.blob.side_effect = blob
    bucket.blobs = blobs
    return bucket


@pytest.fixture(scope="function")
def bucket_factory():
    return make_fake_bucket


@pytest.fixture(scope="function")
def fake_bucket() -> MagicMock:
    return make_fake_bucket()


@pytest.fixture(scope="function")
def cloud_client(client, fake_bucket):
    """Test client whose storage adapter is in cloud mode, backed by fake_bucket."""
    from api import storage

    storage.video_storage.bucket_name = TEST_BUCKET_NAME
    storage.video_storage.bucket = fake_bucket
    yield client
    storage.video_storage.bucket = None


@pytest.fixture(scope="function")
def make_video(test_db_url: str):
    """
    Insert a video row directly and return it as a dict.

    Rows are written with a synchronous engine so they can be created from
    plain (non-async) TestClient tests.
    """
    from api.database import videos

    engine = sa.create_engine(test_db_url)
    base_time = datetime.now(timezone.utc)
    counter = {"n": 0}

    def _make(**overrides) -> dict:
        counter["n"] += 1
        row = {
            "id": f"v-{uuid.uuid4().hex}",
            "title": f"Test Video {counter['n']}",
            "description": "A test video",
            "video_path": f"/uploads/test-{counter['n']}.mp4",
            "thumbnail_url": "https://picsum.photos/seed/test/400/600",
            "uploader_id": "uploader1",
            "uploader_name": "Uploader One",
            # Later calls are newer, so feed order is the reverse of creation order
            "created_at": base_time + timedelta(seconds=counter["n"]),
            "is_hidden": False,
        }
        row.update(overrides)
        with engine.begin() as conn:
            conn.execute(videos.insert().values(**row))
        return row

    yield _make
    engine.dispose()


@pytest.fixture(scope="function")
def make_vote(test_db_url: str):
    """Insert a vote row directly."""
    from api.database import votes

    engine = sa.create_engine(test_db_url)

    def _make(user_id: str, video_id: str, user_email=None) -> None:
        with engine.begin() as conn:
            conn.execute(
                votes.insert().values(
                    user_id=user_id,
                    video_id=video_id,
                    user_email=user_email,
                    cast_at=datetime.now(timezone.utc),
                )
            )

    yield _make
    engine.dispose()


@pytest.fixture(scope="function")
def count_rows(test_db_url: str):
    """Count rows in a table, optionally filtered by a SQLAlchemy clause."""
    engine = sa.create_engine(test_db_url)

    def _count(table, where=None) -> int:
        query = sa.select(sa.func.count()).select_from(table)
        if where is not None:
            query = query.where(where)
        with engine.connect() as conn:
            return conn.execute(query).scalar_one()

    yield _count
    engine.dispose()
