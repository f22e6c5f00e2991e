import asyncio
import json

import httpx
import pytest

from taskclient.auth import build_auth
from taskclient.config import settings
from taskclient.documents import JsonDocument
from taskclient.errors import DeserializationError, ServiceError, TransportCanceled, TransportFault
from taskclient.pipeline import RequestPipeline
from taskclient.schemas import File

API_BASE = "https://api.test/api/v1/"


def _pipeline(handler, **kwargs) -> RequestPipeline:
    return RequestPipeline(
        build_auth("token-1", "client-1"),
        base_url=API_BASE,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_get_as_decodes_typed_result_and_sends_credentials() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 7, "task_id": 3, "file_name": "a.txt"})

    async with _pipeline(handler) as pipeline:
        result = await pipeline.get_as(File, "files/7")

    assert isinstance(result, File)
    assert result.id == 7
    assert result.file_name == "a.txt"
    assert str(seen[0].url) == "https://api.test/api/v1/files/7"
    assert seen[0].headers["X-Access-Token"] == "token-1"
    assert seen[0].headers["X-Client-ID"] == "client-1"
    assert seen[0].headers["Accept"] == "application/json"
    assert seen[0].headers["User-Agent"] == f"{settings.app_name}/{settings.app_version}"


@pytest.mark.asyncio
async def test_get_as_decodes_lists() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": 1}, {"id": 2}])

    async with _pipeline(handler) as pipeline:
        result = await pipeline.get_as(list[File], "files", {"task_id": 3})

    assert [item.id for item in result] == [1, 2]


@pytest.mark.asyncio
async def test_query_parameters_skip_nulls_and_keep_order() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    async with _pipeline(handler) as pipeline:
        await pipeline.get("tasks", {"list_id": 12, "completed": None, "title": "a b", "starred": True})

    assert seen[0].url.query == b"list_id=12&title=a%20b&starred=1"


@pytest.mark.asyncio
async def test_patch_sends_json_body_with_arrays() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 4, "values": [9], "revision": 2})

    async with _pipeline(handler) as pipeline:
        response = await pipeline.patch("task_positions/4", None, {"revision": 1, "values": [9], "title": None})
        document = pipeline.read_document(response)

    request = seen[0]
    assert request.method == "PATCH"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {"revision": 1, "values": [9]}
    assert document.value("values") == [9]


@pytest.mark.asyncio
async def test_send_uses_requested_method() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    async with _pipeline(handler) as pipeline:
        response = await pipeline.send("files/7", {"revision": 3}, None, "DELETE")

    assert response.status_code == 204
    assert seen[0].method == "DELETE"
    assert seen[0].url.query == b"revision=3"
    assert seen[0].content == b""


@pytest.mark.asyncio
async def test_found_redirect_counts_as_success() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "https://cdn.test/avatar.png"})

    async with _pipeline(handler) as pipeline:
        response = await pipeline.get("avatar", {"user_id": 5, "fallback": False})

    assert response.status_code == 302
    assert response.headers["Location"] == "https://cdn.test/avatar.png"


@pytest.mark.asyncio
async def test_json_failure_carries_nested_error_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": "X"}})

    async with _pipeline(handler) as pipeline:
        with pytest.raises(ServiceError) as exc_info:
            await pipeline.get("files/1")

    exc = exc_info.value
    assert exc.status_code == 404
    assert exc.error == {"code": "X"}


@pytest.mark.asyncio
async def test_non_json_failure_carries_reason_phrase() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream down")

    async with _pipeline(handler) as pipeline:
        with pytest.raises(ServiceError) as exc_info:
            await pipeline.get("files/1")

    exc = exc_info.value
    assert exc.status_code == 503
    assert exc.error is None
    assert exc.reason == "Service Unavailable"


@pytest.mark.asyncio
async def test_unparseable_json_failure_falls_back_to_reason_phrase() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, content=b"{not json", headers={"Content-Type": "application/json"})

    async with _pipeline(handler) as pipeline:
        with pytest.raises(ServiceError) as exc_info:
            await pipeline.get("files/1")

    assert exc_info.value.status_code == 500
    assert exc_info.value.reason == "Internal Server Error"


@pytest.mark.asyncio
async def test_transport_fault_chains_cause() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _pipeline(handler) as pipeline:
        with pytest.raises(TransportFault) as exc_info:
            await pipeline.get("files/1")

    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_cancel_before_dispatch_sends_nothing() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    cancel = asyncio.Event()
    cancel.set()
    async with _pipeline(handler) as pipeline:
        with pytest.raises(TransportCanceled) as exc_info:
            await pipeline.get("files/1", cancel=cancel)

    assert seen == []
    assert exc_info.value.method == "GET"


@pytest.mark.asyncio
async def test_cancel_in_flight_resolves_as_canceled() -> None:
    cancel = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        cancel.set()
        await asyncio.sleep(30)
        return httpx.Response(200, json={})

    async with _pipeline(handler) as pipeline:
        with pytest.raises(TransportCanceled):
            await asyncio.wait_for(pipeline.get("files/1", cancel=cancel), timeout=5)


@pytest.mark.asyncio
async def test_unset_cancel_signal_does_not_interfere() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 3})

    async with _pipeline(handler) as pipeline:
        result = await pipeline.get_as(File, "files/3", cancel=asyncio.Event())

    assert result.id == 3


@pytest.mark.asyncio
async def test_put_part_skips_api_credentials_and_hides_signature() -> None:
    seen: list[tuple[httpx.Request, bytes]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request, await request.aread()))
        return httpx.Response(200)

    async def body():
        yield b"abc"
        yield b"def"

    async with _pipeline(handler) as pipeline:
        await pipeline.put_part(
            "https://parts.test/41/1?X-Amz-Signature=secret",
            body(),
            length=6,
            headers={"Authorization": "AWS4 part", "x-amz-date": "20261017T120000Z"},
        )

    request, content = seen[0]
    assert request.method == "PUT"
    assert content == b"abcdef"
    assert request.headers["Content-Length"] == "6"
    assert "Transfer-Encoding" not in request.headers
    assert request.headers["Authorization"] == "AWS4 part"
    assert "X-Access-Token" not in request.headers
    assert request.headers["User-Agent"] == f"{settings.app_name}/{settings.app_version}"


@pytest.mark.asyncio
async def test_malformed_field_is_reported_and_dropped() -> None:
    reported: list[DeserializationError] = []

    def hook(error: DeserializationError) -> bool:
        reported.append(error)
        return True

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "not-a-number", "file_name": "a.txt"})

    async with _pipeline(handler, on_deserialization_error=hook) as pipeline:
        result = await pipeline.get_as(File, "files/1")

    assert result.id is None
    assert result.file_name == "a.txt"
    assert len(reported) == 1
    assert reported[0].target == "File"
    assert reported[0].errors[0]["loc"] == ("id",)


@pytest.mark.asyncio
async def test_malformed_field_inside_list_item_is_dropped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": 1}, {"id": "x"}, {"id": 3}])

    async with _pipeline(handler) as pipeline:
        files = await pipeline.get_as(list[File], "files")

    assert [item.id for item in files] == [1, None, 3]


@pytest.mark.asyncio
async def test_unrecovered_deserialization_error_propagates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>", headers={"Content-Type": "text/html"})

    async with _pipeline(handler, on_deserialization_error=lambda error: False) as pipeline:
        with pytest.raises(DeserializationError):
            await pipeline.get_as(File, "files/1")


@pytest.mark.asyncio
async def test_invalid_json_recovers_to_none_by_default() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>", headers={"Content-Type": "text/html"})

    async with _pipeline(handler) as pipeline:
        assert await pipeline.get_as(File, "files/1") is None
        document = pipeline.read_document(await pipeline.get("root"))

    assert isinstance(document, JsonDocument)
    assert len(document) == 0


@pytest.mark.asyncio
async def test_pipeline_close_is_idempotent() -> None:
    pipeline = _pipeline(lambda request: httpx.Response(200))
    await pipeline.aclose()
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_cancel_in_flight_waits_for_the_send_to_unwind() -> None:
    cancel = asyncio.Event()
    unwound: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        cancel.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            unwound.append(request.url.path)
            raise
        return httpx.Response(200, json={})

    async with _pipeline(handler) as pipeline:
        with pytest.raises(TransportCanceled):
            await pipeline.get("files/1", cancel=cancel)
        assert unwound == ["/api/v1/files/1"]


@pytest.mark.asyncio
async def test_part_redirect_is_a_service_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await request.aread()
        return httpx.Response(302, headers={"Location": "https://mirror.test/41/1"})

    async def body():
        yield b"x"

    async with _pipeline(handler) as pipeline:
        with pytest.raises(ServiceError) as exc_info:
            await pipeline.put_part("https://parts.test/41/1", body(), length=1, headers={})

    assert exc_info.value.status_code == 302
    assert exc_info.value.error is None


@pytest.mark.asyncio
async def test_empty_body_decodes_to_nothing_without_reporting() -> None:
    reported: list[DeserializationError] = []

    def strict(error: DeserializationError) -> bool:
        reported.append(error)
        return False

    async with _pipeline(lambda request: httpx.Response(204), on_deserialization_error=strict) as pipeline:
        response = await pipeline.patch("uploads/41", None, {"state": "finished"})
        document = pipeline.read_document(response)
        result = pipeline.deserialize(response, File)

    assert len(document) == 0
    assert result is None
    assert reported == []
