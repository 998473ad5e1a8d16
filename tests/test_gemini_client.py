import json

import pytest
import respx
from httpx import Response

from sherlock.errors import GenerationError, UploadError
from sherlock.gemini import GeminiClient, GeminiFilesClient, block_reason, normalize_resource_name, response_text


def test_normalize_resource_name():
    assert normalize_resource_name("abc") == "files/abc"
    assert normalize_resource_name("files/abc") == "files/abc"
    assert normalize_resource_name("/files/abc/") == "files/abc"


@pytest.mark.asyncio
async def test_get_file_returns_descriptor_with_key_param():
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["params"] = request.url.params
                return Response(200, json={"name": "files/abc", "state": "ACTIVE"})

            respx_mock.get(host="gemini.test", path="/v1beta/files/abc").mock(side_effect=handler)
            descriptor = await client.get_file("abc")
    finally:
        await client.close()

    assert descriptor == {"name": "files/abc", "state": "ACTIVE"}
    assert captured["params"]["key"] == "test-key"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [403, 404])
async def test_get_file_missing_returns_none(status):
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(host="gemini.test", path="/v1beta/files/abc").mock(return_value=Response(status))
            assert await client.get_file("files/abc") is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_get_file_server_error_raises():
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(host="gemini.test", path="/v1beta/files/abc").mock(return_value=Response(500, text="oops"))
            with pytest.raises(UploadError) as excinfo:
                await client.get_file("files/abc")
    finally:
        await client.close()

    assert excinfo.value.phase == "lookup"
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [Response(200, text="<html>proxy</html>"), Response(200, json=[])],
)
async def test_get_file_unreadable_body_is_upload_error(response):
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(host="gemini.test", path="/v1beta/files/abc").mock(return_value=response)
            with pytest.raises(UploadError) as excinfo:
                await client.get_file("files/abc")
    finally:
        await client.close()

    assert excinfo.value.phase == "lookup"
    assert excinfo.value.status_code == 200


@pytest.mark.asyncio
async def test_list_files_non_json_is_upload_error():
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(host="gemini.test", path="/v1beta/files").mock(return_value=Response(200, text="not json"))
            with pytest.raises(UploadError) as excinfo:
                await client.list_files()
    finally:
        await client.close()

    assert excinfo.value.phase == "list"


@pytest.mark.asyncio
async def test_list_files_returns_page_and_token():
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["params"] = request.url.params
                return Response(200, json={"files": [{"name": "files/a"}], "nextPageToken": "next"})

            respx_mock.get(host="gemini.test", path="/v1beta/files").mock(side_effect=handler)
            files, token = await client.list_files(page_size=50, page_token="tok")
    finally:
        await client.close()

    assert files == [{"name": "files/a"}]
    assert token == "next"
    assert captured["params"]["pageSize"] == "50"
    assert captured["params"]["pageToken"] == "tok"


@pytest.mark.asyncio
async def test_delete_file_reports_missing():
    client = GeminiFilesClient("test-key", base_url="http://gemini.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.delete(host="gemini.test", path="/v1beta/files/gone").mock(return_value=Response(404))
            respx_mock.delete(host="gemini.test", path="/v1beta/files/here").mock(return_value=Response(200, json={}))
            assert await client.delete_file("files/gone") is False
            assert await client.delete_file("files/here") is True
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_generate_content_payload():
    client = GeminiClient("test-key", model="gemini-test", base_url="http://gemini.test")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["path"] = request.url.path
                captured["params"] = request.url.params
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"candidates": []})

            respx_mock.post(host="gemini.test", path__regex=r".*:generateContent$").mock(side_effect=handler)
            data = await client.generate_content([{"text": "hello"}], system_instruction="Be brief.")
    finally:
        await client.close()

    assert data == {"candidates": []}
    assert captured["path"] == "/v1beta/models/gemini-test:generateContent"
    assert captured["params"]["key"] == "test-key"
    assert captured["json"]["contents"] == [{"role": "user", "parts": [{"text": "hello"}]}]
    assert captured["json"]["systemInstruction"] == {"parts": [{"text": "Be brief."}]}


@pytest.mark.asyncio
async def test_generate_content_http_error():
    client = GeminiClient("test-key", model="gemini-test", base_url="http://gemini.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(host="gemini.test", path__regex=r".*:generateContent$").mock(
                return_value=Response(400, json={"error": {"message": "bad file uri"}})
            )
            with pytest.raises(GenerationError) as excinfo:
                await client.generate_content([{"text": "hello"}])
    finally:
        await client.close()

    assert excinfo.value.status_code == 400
    assert "bad file uri" in excinfo.value.body


def test_response_text_skips_thought_parts():
    data = {
        "candidates": [
            {"content": {"parts": [{"text": "thinking...", "thought": True}, {"text": "{\"results\": "}, {"text": "[]}"}]}}
        ]
    }
    assert response_text(data) == '{"results": []}'
    assert response_text({}) == ""


def test_block_reason():
    assert block_reason({"promptFeedback": {"blockReason": "SAFETY"}}) == "SAFETY"
    assert block_reason({"candidates": [{"finishReason": "RECITATION"}]}) == "RECITATION"
    assert block_reason({"candidates": [{"finishReason": "STOP"}]}) is None
