from collections.abc import Callable
from functools import cached_property

import httpx

from taskclient.auth import build_auth
from taskclient.pipeline import DeserializationErrorHook, RequestPipeline
from taskclient.storage import StorageProvider, build_storage_provider
from taskclient.tracing import setup_tracing
from taskclient.uploads import FileUploader


class ServiceClient:
    """Entry point: one pipeline shared by every caller, storage created on first use."""

    def __init__(
        self,
        access_token: str | None = None,
        client_id: str | None = None,
        storage_factory: Callable[[], StorageProvider] | None = None,
        *,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        part_transport: httpx.AsyncBaseTransport | None = None,
        on_deserialization_error: DeserializationErrorHook | None = None,
    ) -> None:
        setup_tracing()
        self._storage_factory = storage_factory or build_storage_provider
        self.pipeline = RequestPipeline(
            build_auth(access_token, client_id),
            base_url=base_url,
            transport=transport,
            part_transport=part_transport,
            on_deserialization_error=on_deserialization_error,
        )
        self.files = FileUploader(self.pipeline, lambda: self.storage)

    @cached_property
    def storage(self) -> StorageProvider:
        return self._storage_factory()

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.pipeline.aclose()
