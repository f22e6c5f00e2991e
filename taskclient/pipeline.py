import asyncio
import contextlib
import enum
import json
import time
from collections.abc import AsyncIterable, Iterable, Mapping
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, TypeVar
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from taskclient.config import settings
from taskclient.documents import JsonDocument
from taskclient.errors import DeserializationError, ServiceError, TransportCanceled, TransportFault
from taskclient.events import log_event
from taskclient.metrics import request_duration_seconds, requests_total
from taskclient.tracing import get_tracer

JSON_MEDIA_TYPE = "application/json"
QUERY_DATETIME_FORMAT = "%m/%d/%Y %H:%M:%S"

T = TypeVar("T")
DeserializationErrorHook = Callable[[DeserializationError], bool]


class Unescaped(str):
    """Query value that is already safe for a URI and is sent verbatim."""


def convert_parameter_value(value: Any, escape: bool = True) -> str:
    if isinstance(value, enum.Enum):
        return value.name.lower()
    if isinstance(value, datetime):
        return value.strftime(QUERY_DATETIME_FORMAT)
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    text = str(value)
    if not escape or isinstance(value, Unescaped):
        return text
    # RFC 3986 unreserved characters stay as they are
    return quote(text, safe="")


def build_command(resource_type: str, resource_id: int | None = None) -> str:
    return resource_type if resource_id is None else f"{resource_type}/{resource_id}"


def build_request_uri(base_url: str, command: str, params: Mapping[str, Any] | None = None) -> str:
    url = base_url.rstrip("/") + "/" + command.lstrip("/")
    if params is None:
        return url
    query = "&".join(
        f"{name}={convert_parameter_value(value)}" for name, value in params.items() if value is not None
    )
    return f"{url}?{query}" if query else url


def _is_array_value(value: Any) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, bytearray, Mapping))


def build_request_content(body: Mapping[str, Any] | None) -> bytes | None:
    if body is None:
        return None
    content: dict[str, Any] = {}
    for key, value in body.items():
        if value is None:
            continue
        if _is_array_value(value):
            value = list(value)
        content[key] = to_jsonable_python(value)
    return json.dumps(content, separators=(",", ":")).encode("utf-8")


def _is_success(response: httpx.Response) -> bool:
    return response.is_success or response.status_code == httpx.codes.FOUND


def _is_part_success(response: httpx.Response) -> bool:
    # a redirect from part storage means the bytes did not land
    return response.is_success


def _media_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "").split(";", 1)[0].strip().lower()


def service_error_from_response(response: httpx.Response) -> ServiceError:
    if response.content and _media_type(response) == JSON_MEDIA_TYPE:
        try:
            envelope = json.loads(response.content)
        except ValueError:
            envelope = None
        if isinstance(envelope, dict):
            error = envelope.get("error")
            return ServiceError(
                response.status_code,
                error=error if isinstance(error, dict) else None,
                reason=response.reason_phrase,
            )
    return ServiceError(response.status_code, reason=response.reason_phrase)


def _display_url(url: httpx.URL) -> str:
    # presigned part targets carry their signature in the query string
    return f"{url.scheme}://{url.netloc.decode('ascii')}{url.path}"


@lru_cache(maxsize=None)
def _adapter(result_type: Any) -> TypeAdapter:
    return TypeAdapter(result_type)


def _type_name(result_type: Any) -> str:
    return getattr(result_type, "__name__", None) or repr(result_type)


def _drop_location(data: Any, loc: tuple) -> bool:
    target = data
    for part in loc[:-1]:
        try:
            target = target[part]
        except (KeyError, IndexError, TypeError):
            return False
    last = loc[-1]
    if isinstance(target, dict) and last in target:
        del target[last]
        return True
    if isinstance(target, list) and isinstance(last, int) and 0 <= last < len(target):
        del target[last]
        return True
    return False


def log_deserialization_error(error: DeserializationError) -> bool:
    log_event(
        {
            "event": "deserialization_error",
            "target": error.target,
            "detail": str(error),
            "locations": [list(item["loc"]) for item in error.errors],
        }
    )
    return True


async def _send(client: httpx.AsyncClient, request: httpx.Request, cancel: asyncio.Event | None) -> httpx.Response:
    if cancel is None:
        return await client.send(request)
    if cancel.is_set():
        raise TransportCanceled(request.method, _display_url(request.url))

    sending = asyncio.ensure_future(client.send(request))
    canceled = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({sending, canceled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        canceled.cancel()
        if not sending.done():
            sending.cancel()
            with contextlib.suppress(asyncio.CancelledError, httpx.HTTPError):
                await sending
    if sending in done:
        return sending.result()
    raise TransportCanceled(request.method, _display_url(request.url))


class RequestPipeline:
    def __init__(
        self,
        auth: httpx.Auth | None = None,
        *,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        part_transport: httpx.AsyncBaseTransport | None = None,
        on_deserialization_error: DeserializationErrorHook | None = None,
    ) -> None:
        self.base_url = base_url or settings.api_base_url
        self.on_deserialization_error = on_deserialization_error or log_deserialization_error
        user_agent = f"{settings.app_name}/{settings.app_version}"
        self._api_client = httpx.AsyncClient(
            auth=auth,
            headers={"Accept": JSON_MEDIA_TYPE, "User-Agent": user_agent},
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=settings.connect_timeout_seconds),
            transport=transport,
        )
        # part targets are presigned; API credentials must not reach them
        self._part_client = httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=httpx.Timeout(settings.part_upload_timeout_seconds, connect=settings.connect_timeout_seconds),
            transport=part_transport if part_transport is not None else transport,
        )

    async def __aenter__(self) -> "RequestPipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._api_client.aclose()
        await self._part_client.aclose()

    def _build_request(
        self, method: str, command: str, params: Mapping[str, Any] | None, body: Mapping[str, Any] | None
    ) -> httpx.Request:
        content = build_request_content(body)
        headers = {"Content-Type": JSON_MEDIA_TYPE} if content is not None else None
        return self._api_client.build_request(
            method, build_request_uri(self.base_url, command, params), content=content, headers=headers
        )

    def _record(self, request: httpx.Request, outcome: str, started: float, **fields: Any) -> None:
        duration_seconds = time.perf_counter() - started
        requests_total.labels(method=request.method, outcome=outcome).inc()
        request_duration_seconds.labels(method=request.method).observe(duration_seconds)
        log_event(
            {
                "event": "request_completed" if outcome == "success" else "request_error",
                "method": request.method,
                "path": request.url.path,
                "outcome": outcome,
                "duration_ms": round(duration_seconds * 1000, 2),
                **fields,
            }
        )

    async def _dispatch(
        self,
        client: httpx.AsyncClient,
        request: httpx.Request,
        cancel: asyncio.Event | None,
        accept: Callable[[httpx.Response], bool] = _is_success,
    ) -> httpx.Response:
        started = time.perf_counter()
        with get_tracer().start_as_current_span("taskclient.request") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.url", _display_url(request.url))
            try:
                response = await _send(client, request, cancel)
            except TransportCanceled:
                self._record(request, "canceled", started, error_class="canceled")
                raise
            except httpx.TransportError as exc:
                self._record(request, "fault", started, error_class="transport_fault", detail=str(exc))
                raise TransportFault(f"{request.method} {_display_url(request.url)} failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if not accept(response):
                error = service_error_from_response(response)
                self._record(
                    request,
                    "failure",
                    started,
                    status_code=response.status_code,
                    error_class="client_error" if 400 <= response.status_code < 500 else "server_error",
                    detail=str(error),
                )
                raise error

            self._record(request, "success", started, status_code=response.status_code)
            return response

    async def get(
        self, command: str, params: Mapping[str, Any] | None = None, *, cancel: asyncio.Event | None = None
    ) -> httpx.Response:
        return await self._dispatch(self._api_client, self._build_request("GET", command, params, None), cancel)

    async def get_as(
        self,
        result_type: type[T] | Any,
        command: str,
        params: Mapping[str, Any] | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> T | None:
        return self.deserialize(await self.get(command, params, cancel=cancel), result_type)

    async def patch(
        self,
        command: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> httpx.Response:
        return await self._dispatch(self._api_client, self._build_request("PATCH", command, params, body), cancel)

    async def patch_as(
        self,
        result_type: type[T] | Any,
        command: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> T | None:
        return self.deserialize(await self.patch(command, params, body, cancel=cancel), result_type)

    async def send(
        self,
        command: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        method: str = "POST",
        *,
        cancel: asyncio.Event | None = None,
    ) -> httpx.Response:
        request = self._build_request(method.upper(), command, params, body)
        return await self._dispatch(self._api_client, request, cancel)

    async def send_as(
        self,
        result_type: type[T] | Any,
        command: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
        method: str = "POST",
        *,
        cancel: asyncio.Event | None = None,
    ) -> T | None:
        return self.deserialize(await self.send(command, params, body, method, cancel=cancel), result_type)

    async def put_part(
        self,
        url: str,
        content: AsyncIterable[bytes],
        *,
        length: int,
        headers: Mapping[str, str],
        cancel: asyncio.Event | None = None,
    ) -> httpx.Response:
        request = self._part_client.build_request(
            "PUT", url, content=content, headers={**headers, "Content-Length": str(length)}
        )
        return await self._dispatch(self._part_client, request, cancel, accept=_is_part_success)

    def _report(self, error: DeserializationError) -> None:
        if not self.on_deserialization_error(error):
            raise error

    def deserialize(self, response: httpx.Response, result_type: type[T] | Any) -> T | None:
        """Decode a success body into result_type.

        Malformed content goes to the deserialization hook. When the hook
        recovers, offending fields are dropped and the payload is validated
        once more; None is returned if that is not enough.
        """
        adapter = _adapter(result_type)
        content = response.content
        if not content.strip():
            return None
        try:
            return adapter.validate_json(content)
        except ValidationError as exc:
            errors = [{"loc": tuple(item["loc"]), "type": item["type"], "msg": item["msg"]} for item in exc.errors()]
            error = DeserializationError(
                f"could not decode response as {_type_name(result_type)}: {exc.error_count()} error(s)",
                target=_type_name(result_type),
                content=content,
                errors=errors,
            )
        self._report(error)

        try:
            data = json.loads(content)
        except ValueError:
            return None
        for item in reversed(errors):
            if not item["loc"] or not _drop_location(data, item["loc"]):
                return None
        try:
            return adapter.validate_python(data)
        except ValidationError:
            return None

    def read_document(self, response: httpx.Response) -> JsonDocument:
        if not response.content.strip():
            return JsonDocument()
        try:
            return JsonDocument.from_json(response.content)
        except ValidationError as exc:
            errors = [{"loc": tuple(item["loc"]), "type": item["type"], "msg": item["msg"]} for item in exc.errors()]
            error = DeserializationError(
                f"could not decode response as a JSON object: {exc.error_count()} error(s)",
                target="JsonDocument",
                content=response.content,
                errors=errors,
            )
        self._report(error)
        return JsonDocument()
