"""
Pytest fixtures for Tubely tests.
Provides a per-test SQLite database, a test client, seeded users and videos,
and fakes for the process runner and object store so no test spawns
ffmpeg or talks to S3.
"""

import importlib
import io
import json
import os
import shutil
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, List, Optional, Sequence, Tuple

import pytest
import sqlalchemy as sa
from databases import Database
from starlette.datastructures import FormData, Headers, UploadFile

# Must be set BEFORE importing config
os.environ["TUBELY_TEST_MODE"] = "1"

from api.auth import make_jwt  # noqa: E402
from api.database import metadata, users, videos  # noqa: E402
from api.object_storage import ObjectStore  # noqa: E402
from worker.process_runner import ProcessRunner, ToolResult  # noqa: E402

TEST_JWT_SECRET = "tubely-test-secret-0123456789abcdef"
TEST_BASE_URL = "http://testserver"


class FakeRunner(ProcessRunner):
    """
    Stands in for ffmpeg/ffprobe.

    ffmpeg "remuxes" by copying its input to the output path (also when told
    to fail, to simulate a partial write). ffprobe reports the configured
    dimensions unless ``probe_stdout`` overrides the raw output.
    """

    def __init__(
        self,
        width: int = 1920,
        height: int = 1080,
        ffmpeg_exit: int = 0,
        ffmpeg_stderr: bytes = b"",
        ffprobe_exit: int = 0,
        probe_stdout: Optional[bytes] = None,
        write_output: bool = True,
    ):
        self.width = width
        self.height = height
        self.ffmpeg_exit = ffmpeg_exit
        self.ffmpeg_stderr = ffmpeg_stderr
        self.ffprobe_exit = ffprobe_exit
        self.probe_stdout = probe_stdout
        self.write_output = write_output
        self.calls: List[Tuple[str, List[str]]] = []

    @property
    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]

    async def run(self, command: str, args: Sequence[str]) -> ToolResult:
        args = list(args)
        self.calls.append((command, args))

        if command.endswith("ffprobe"):
            stdout = self.probe_stdout
            if stdout is None:
                stdout = json.dumps({"streams": [{"width": self.width, "height": self.height}]}).encode()
            return ToolResult(exit_code=self.ffprobe_exit, stdout=stdout, stderr=b"")

        if command.endswith("ffmpeg"):
            if self.write_output:
                shutil.copyfile(args[args.index("-i") + 1], args[-1])
            return ToolResult(exit_code=self.ffmpeg_exit, stdout=b"", stderr=self.ffmpeg_stderr)

        raise AssertionError(f"Unexpected command: {command}")


class RecordingObjectStore(ObjectStore):
    """Object store that keeps uploaded bytes in memory."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.objects = {}

    async def put(self, key: str, source_path: Path, content_type: str) -> None:
        if self.error is not None:
            raise self.error
        self.objects[key] = (source_path.read_bytes(), content_type)

    def public_url(self, key: str) -> str:
        return f"https://tubely-test.s3.us-east-1.amazonaws.com/{key}"


def make_form_reader(field: str, data: bytes, filename: str, content_type: str):
    """Build a ``read_form`` callable returning a form with one uploaded file."""
    upload = UploadFile(
        file=io.BytesIO(data),
        size=len(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )

    async def read_form() -> FormData:
        return FormData([(field, upload)])

    return read_form


def bearer_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_jwt(user_id, TEST_JWT_SECRET)}"}


def _insert(db_url: str, table: sa.Table, **values) -> None:
    engine = sa.create_engine(db_url)
    with engine.begin() as conn:
        conn.execute(table.insert().values(**values))
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a fresh SQLite database file with all tables."""
    db_url = f"sqlite:///{tmp_path / 'tubely_test.db'}"
    engine = sa.create_engine(db_url)
    metadata.create_all(engine)
    engine.dispose()
    return db_url


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create test assets and scratch directories."""
    assets_dir = tmp_path / "assets"
    scratch_dir = tmp_path / "scratch"
    assets_dir.mkdir(parents=True, exist_ok=True)
    scratch_dir.mkdir(parents=True, exist_ok=True)
    return {"assets": assets_dir, "scratch": scratch_dir}


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connect to the test database."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def use_test_database(test_database: Database, monkeypatch) -> Database:
    """Point the persistence accessors at the test database."""
    monkeypatch.setattr(sys.modules["api.database"], "database", test_database)
    return test_database


@pytest.fixture(scope="function")
def sample_user(test_db_url: str) -> dict:
    """Create the user that owns ``sample_video``."""
    now = datetime.now(timezone.utc)
    user = {"id": str(uuid.uuid4()), "email": "owner@example.com"}
    _insert(test_db_url, users, created_at=now, updated_at=now, **user)
    return user


@pytest.fixture(scope="function")
def other_user(test_db_url: str) -> dict:
    """Create a user that owns nothing."""
    now = datetime.now(timezone.utc)
    user = {"id": str(uuid.uuid4()), "email": "other@example.com"}
    _insert(test_db_url, users, created_at=now, updated_at=now, **user)
    return user


@pytest.fixture(scope="function")
def sample_video(test_db_url: str, sample_user: dict) -> dict:
    """Create a video with no thumbnail and no published file."""
    now = datetime.now(timezone.utc)
    video = {
        "id": str(uuid.uuid4()),
        "user_id": sample_user["id"],
        "title": "Boot.dev Beats",
        "description": "A test video description",
    }
    _insert(test_db_url, videos, created_at=now, updated_at=now, **video)
    return video


@pytest.fixture
def auth_headers(sample_user: dict) -> dict:
    return bearer_headers(sample_user["id"])


@pytest.fixture
def other_auth_headers(other_user: dict) -> dict:
    return bearer_headers(other_user["id"])


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture(scope="function")
def api_client(test_storage: dict, test_db_url: str, fake_runner: FakeRunner, monkeypatch):
    """
    Create a test client for the API with a temporary database.

    Videos are published to the local object store under the test assets
    directory and media tools are replaced by ``fake_runner``.
    """
    from fastapi.testclient import TestClient

    import config

    monkeypatch.setattr(config, "DATABASE_URL", test_db_url)
    monkeypatch.setattr(config, "JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(config, "ASSETS_ROOT", test_storage["assets"])
    monkeypatch.setattr(config, "SCRATCH_DIR", test_storage["scratch"])
    monkeypatch.setattr(config, "PUBLIC_BASE_URL", TEST_BASE_URL)
    monkeypatch.setattr(config, "THUMBNAIL_STORAGE", "filesystem")
    monkeypatch.setattr(config, "VIDEO_STORAGE", "local")
    monkeypatch.setattr(config, "RATE_LIMIT_ENABLED", False)

    # Modules that bound config values or the database at import time
    for module_name in ("api.database", "api.common", "api.public"):
        if module_name in sys.modules:
            importlib.reload(sys.modules[module_name])
        else:
            importlib.import_module(module_name)

    from api.public import app

    with TestClient(app, raise_server_exceptions=True) as client:
        app.state.process_runner = fake_runner
        yield client
