import asyncio
import mimetypes
from pathlib import Path
from typing import BinaryIO

from taskclient.config import settings


class StorageProvider:
    """Source of local files handed to the upload coordinator."""

    async def get_mime_type(self, name: str) -> str | None:
        raise NotImplementedError

    async def open(self, name: str, cancel: asyncio.Event | None = None) -> BinaryIO:
        raise NotImplementedError


class LocalStorageProvider(StorageProvider):
    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def _resolve(self, name: str) -> Path:
        path = Path(name)
        return path if path.is_absolute() else self.root / path

    async def get_mime_type(self, name: str) -> str | None:
        content_type, _ = mimetypes.guess_type(str(self._resolve(name)))
        return content_type

    async def open(self, name: str, cancel: asyncio.Event | None = None) -> BinaryIO:
        # opening a local file does not wait on anything worth canceling
        return await asyncio.to_thread(self._resolve(name).open, "rb")


def build_storage_provider() -> StorageProvider:
    return LocalStorageProvider(settings.storage_root)
