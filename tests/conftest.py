from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from sherlock.main import create_app
from sherlock.projects import ProjectStore
from tests.fakes import (
    FakeDriveClient,
    FakeFilesClient,
    FakeGeminiClient,
    FakeUploader,
    build_orchestrator,
    make_settings,
    write_project,
)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_files: Optional[FakeFilesClient] = None,
        fake_gemini: Optional[FakeGeminiClient] = None,
        fake_uploader: Optional[FakeUploader] = None,
        fake_drive: Optional[FakeDriveClient] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        write_project(Path(settings.projects_dir))
        files = fake_files or FakeFilesClient()
        gemini = fake_gemini or FakeGeminiClient()
        uploader = fake_uploader or FakeUploader(files)
        drive = fake_drive or FakeDriveClient()
        orchestrator = build_orchestrator(settings, files=files, gemini=gemini, uploader=uploader)
        projects = ProjectStore(Path(settings.projects_dir), settings.default_project)
        app = create_app(settings, orchestrator=orchestrator, projects=projects, drive=drive)
        return app, files, gemini, uploader

    return _factory


@pytest.fixture
async def client(app_factory):
    app, files, gemini, uploader = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_files = files  # type: ignore[attr-defined]
            http_client.fake_gemini = gemini  # type: ignore[attr-defined]
            http_client.fake_uploader = uploader  # type: ignore[attr-defined]
            yield http_client
