import base64

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from sherlock.dedup import resource_name_for
from sherlock.errors import GenerationError, UploadError
from tests.fakes import CATALOG, FakeDriveClient, FakeFilesClient, FakeGeminiClient, FakeUploader


HEURISTIC = CATALOG["data"]["heuristics"][0]


@pytest.mark.asyncio
async def test_heuristics_are_grouped(client):
    res = await client.get("/api/heuristics")
    assert res.status_code == 200
    groups = res.json()["groups"]
    assert [g["title"] for g in groups] == ["Feedback", "Content"]
    assert [i["heuristicNumber"] for i in groups[0]["items"]] == ["3.16", "3.17"]


@pytest.mark.asyncio
async def test_heuristics_unknown_project(client):
    res = await client.get("/api/heuristics", params={"project": "nope"})
    assert res.status_code == 400
    assert res.json()["detail"]["kind"] == "invalid_request"


@pytest.mark.asyncio
async def test_analyze_with_inline_image(client):
    payload = {
        "heuristics": [HEURISTIC],
        "mediaParts": [{"mimeType": "image/png", "data": base64.b64encode(b"png").decode("ascii")}],
        "context": "Home page",
    }
    res = await client.post("/api/analyze", json=payload)
    assert res.status_code == 200
    data = res.json()
    assert data["results"][0]["score"] == 4
    assert data["usage"]["totalTokenCount"] == 150

    call = client.fake_gemini.calls[0]
    assert call["system_instruction"] == "You are a UX auditor."
    assert call["parts"][1]["inlineData"]["data"] == base64.b64encode(b"png").decode("ascii")


@pytest.mark.asyncio
async def test_analyze_with_file_uri(client):
    payload = {
        "heuristics": [HEURISTIC],
        "mediaParts": [{"fileUri": "https://files.test/v1beta/files/abc", "mimeType": "video/mp4"}],
    }
    res = await client.post("/api/analyze", json=payload)
    assert res.status_code == 200
    part = client.fake_gemini.calls[0]["parts"][1]
    assert part == {"fileData": {"fileUri": "https://files.test/v1beta/files/abc", "mimeType": "video/mp4"}}


@pytest.mark.asyncio
async def test_analyze_validation_errors(client):
    res = await client.post("/api/analyze", json={"heuristics": [], "mediaParts": []})
    assert res.status_code == 400
    assert res.json()["detail"]["kind"] == "invalid_request"

    res = await client.post(
        "/api/analyze",
        json={"heuristics": [HEURISTIC], "mediaParts": [{"mimeType": "image/png", "data": "%%%"}]},
    )
    assert res.status_code == 400
    assert client.fake_gemini.calls == []


@pytest.mark.asyncio
async def test_analyze_generation_failure_is_bad_gateway(app_factory):
    app, _, _, _ = app_factory(fake_gemini=FakeGeminiClient(error=GenerationError(500, "model down")))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post(
                "/api/analyze",
                json={
                    "heuristics": [HEURISTIC],
                    "mediaParts": [{"fileUri": "https://files.test/x", "mimeType": "video/mp4"}],
                },
            )
    assert res.status_code == 502
    detail = res.json()["detail"]
    assert detail["kind"] == "generation_failed"
    assert detail["status_code"] == 500


@pytest.mark.asyncio
async def test_asset_upload_image_is_inline(client):
    res = await client.post("/api/assets", files={"file": ("home.png", b"png-bytes", "image/png")})
    assert res.status_code == 200
    assert res.json() == {"mimeType": "image/png", "inline": True, "size": len(b"png-bytes")}
    assert client.fake_uploader.calls == []


@pytest.mark.asyncio
async def test_asset_upload_video_is_deduplicated(client):
    files = {"file": ("clip.mp4", b"video-bytes", "video/mp4")}
    first = await client.post("/api/assets", files=files, data={"source_id": "local:clip"})
    second = await client.post("/api/assets", files=files, data={"source_id": "local:clip"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["name"] == resource_name_for("local:clip")
    assert second.json()["fileUri"] == first.json()["fileUri"]
    assert first.json()["state"] == "ACTIVE"
    assert len(client.fake_uploader.calls) == 1


@pytest.mark.asyncio
async def test_asset_upload_rejects_non_media(client):
    res = await client.post("/api/assets", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_asset_processing_failure_maps_to_422(app_factory):
    files = FakeFilesClient()
    uploader = FakeUploader(files, state="PROCESSING")
    app, _, _, _ = app_factory(fake_files=files, fake_uploader=uploader)
    name = resource_name_for("local:broken")
    files.state_sequences[name] = ["FAILED"]
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post(
                "/api/assets",
                files={"file": ("clip.mp4", b"v", "video/mp4")},
                data={"source_id": "local:broken"},
            )
    assert res.status_code == 422
    assert res.json()["detail"]["kind"] == "processing_failed"


@pytest.mark.asyncio
async def test_asset_upload_error_maps_to_502(app_factory):
    files = FakeFilesClient()
    uploader = FakeUploader(files, error=UploadError("transfer", 500, "boom"))
    app, _, _, _ = app_factory(fake_files=files, fake_uploader=uploader)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post("/api/assets", files={"file": ("clip.mp4", b"v", "video/mp4")})
    assert res.status_code == 502
    assert res.json()["detail"]["phase"] == "transfer"


@pytest.mark.asyncio
async def test_drive_asset_reuses_without_download(app_factory):
    files = FakeFilesClient()
    files.add(resource_name_for("drive:abc"), state="ACTIVE")
    drive = FakeDriveClient()
    app, _, _, uploader = app_factory(fake_files=files, fake_drive=drive)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post(
                "/api/assets/drive",
                json={"file": {"id": "abc", "name": "demo.mp4", "mimeType": "video/mp4"}, "accessToken": "tok"},
            )
    assert res.status_code == 200
    assert res.json()["name"] == resource_name_for("drive:abc")
    assert drive.downloads == []
    assert uploader.calls == []
    assert drive.closed


@pytest.mark.asyncio
async def test_drive_asset_downloads_when_missing(app_factory):
    drive = FakeDriveClient(content=b"drive-video")
    app, _, _, uploader = app_factory(fake_drive=drive)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post(
                "/api/assets/drive",
                json={"file": {"id": "abc", "name": "demo.mp4", "mimeType": "video/mp4"}, "accessToken": "tok"},
            )
            missing_token = await http_client.post("/api/assets/drive", json={"file": {"id": "abc"}})
    assert res.status_code == 200
    assert drive.downloads == [{"file_id": "abc", "access_token": "tok"}]
    assert uploader.calls[0]["size"] == len(b"drive-video")
    assert missing_token.status_code == 400


@pytest.mark.asyncio
async def test_lifespan_closes_clients(app_factory):
    app, files, gemini, _ = app_factory()
    async with LifespanManager(app):
        pass
    assert files.closed
    assert gemini.closed
