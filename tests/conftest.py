"""Shared pytest fixtures.

Database fixtures live in ``tests/fixtures/database.py``; fakes for the
external clients and the media executor in ``tests/support/fakes.py``.
"""

import pytest

from cutflow.services.media_service import MediaService
from tests.support.fakes import (
    FakeAnalysisClient,
    FakeDownloader,
    FakeMediaExecutor,
    FakeNarrationClient,
    FakeSpeechClient,
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Point workspace/output at tmp_path and clear tuning variables."""
    monkeypatch.setenv("WORKSPACE_ROOT", str(tmp_path / "workspace"))
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path / "output"))
    for name in (
        "MAX_CONCURRENT_JOBS",
        "DEFAULT_MAX_CONCURRENT_SCENES",
        "SCENE_CONCURRENCY_HARD_CAP",
        "NARRATION_BATCH_SIZE",
        "SUBTITLE_ENABLED",
        "STEP_WATCHDOG_SECONDS",
        "ANALYSIS_CLIENT",
        "NARRATION_CLIENT",
        "SPEECH_CLIENT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def media_executor() -> FakeMediaExecutor:
    return FakeMediaExecutor()


@pytest.fixture
def media_service(media_executor) -> MediaService:
    return MediaService(media_executor, job_id="job-test")  # type: ignore[arg-type]


@pytest.fixture
def narration_client() -> FakeNarrationClient:
    return FakeNarrationClient()


@pytest.fixture
def speech_client() -> FakeSpeechClient:
    return FakeSpeechClient()


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def analysis_client() -> FakeAnalysisClient:
    return FakeAnalysisClient([])


# Import additional fixtures from fixtures/ package
from tests.fixtures.database import (  # noqa: F401, E402
    job,
    repo,
    session_factory,
    db_engine,
)
