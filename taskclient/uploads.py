import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO

from taskclient.documents import JsonDocument
from taskclient.errors import DeserializationError, TaskClientError
from taskclient.events import upload_event
from taskclient.metrics import (
    files_uploaded_total,
    part_bytes_uploaded_total,
    part_upload_failures_total,
    parts_uploaded_total,
)
from taskclient.pipeline import RequestPipeline, build_command
from taskclient.schemas import File
from taskclient.storage import StorageProvider
from taskclient.streams import StreamWindow, aiter_stream, stream_length
from taskclient.tracing import get_tracer

PART_SIZE_BYTES = 5 * 1024 * 1024
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def required_parts(byte_length: int) -> int:
    # an empty file still goes up as one (empty) part
    return max(1, -(-byte_length // PART_SIZE_BYTES))


@dataclass(frozen=True)
class PartDescriptor:
    url: str
    authorization: str
    date: str

    @classmethod
    def from_document(cls, document: JsonDocument | None) -> "PartDescriptor":
        url = document.value("url", str) if document is not None else None
        if not url:
            raise DeserializationError("upload response carries no part target", target="PartDescriptor", content=b"")
        return cls(
            url=url,
            authorization=document.value("authorization", str) or "",
            date=document.value("date", str) or "",
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": self.authorization, "x-amz-date": self.date}


@dataclass
class UploadSession:
    upload_id: int
    byte_length: int
    content_type: str
    part: PartDescriptor


class FileUploader:
    """Uploads a local file in parts and registers it against a task.

    The remote upload session is not aborted when a later step fails or is
    canceled; it stays unfinished on the server.
    """

    def __init__(self, pipeline: RequestPipeline, storage: Callable[[], StorageProvider]) -> None:
        self._pipeline = pipeline
        self._storage = storage

    async def create(self, task_id: int, file_name: str, *, cancel: asyncio.Event | None = None) -> File | None:
        return await self.create_file_upload(task_id, file_name, cancel=cancel)

    async def create_file_upload(
        self, task_id: int, file_name: str, *, cancel: asyncio.Event | None = None
    ) -> File | None:
        storage = self._storage()
        content_type = await storage.get_mime_type(file_name) or DEFAULT_CONTENT_TYPE

        with get_tracer().start_as_current_span("taskclient.file_upload") as span:
            span.set_attribute("taskclient.task_id", task_id)
            stream = await storage.open(file_name, cancel)
            with stream:
                byte_length = stream_length(stream)
                session = await self._start_upload(
                    os.path.basename(file_name), byte_length, content_type, cancel=cancel
                )
                local_created_at = datetime.now(timezone.utc)
                parts = required_parts(byte_length)
                span.set_attribute("taskclient.upload_id", session.upload_id)
                upload_event(
                    {
                        "event": "upload_started",
                        "upload_id": session.upload_id,
                        "task_id": task_id,
                        "file_size": byte_length,
                        "content_type": content_type,
                        "required_parts": parts,
                        "seekable": stream.seekable(),
                    }
                )

                if parts > 1 and stream.seekable():
                    await self._upload_window(session, 1, stream, cancel)
                    for part_number in range(2, parts + 1):
                        if cancel is not None and cancel.is_set():
                            upload_event(
                                {
                                    "event": "upload_parts_skipped",
                                    "upload_id": session.upload_id,
                                    "from_part": part_number,
                                    "required_parts": parts,
                                }
                            )
                            break
                        session.part = await self._next_part(session.upload_id, part_number, cancel=cancel)
                        await self._upload_window(session, part_number, stream, cancel)
                else:
                    await self._upload_part(session, 1, stream, byte_length, cancel)

                await self._finish_upload(session.upload_id, cancel=cancel)
                created = await self._create_file(task_id, session.upload_id, local_created_at, cancel=cancel)

        files_uploaded_total.inc()
        upload_event(
            {
                "event": "file_registered",
                "upload_id": session.upload_id,
                "task_id": task_id,
                "file_id": created.id if created is not None else None,
            }
        )
        return created

    async def _upload_window(
        self, session: UploadSession, part_number: int, stream: BinaryIO, cancel: asyncio.Event | None
    ) -> None:
        offset = (part_number - 1) * PART_SIZE_BYTES
        with StreamWindow(stream, offset, PART_SIZE_BYTES) as window:
            length = min(window.length, session.byte_length - offset)
            await self._upload_part(session, part_number, window, length, cancel)

    async def _upload_part(
        self,
        session: UploadSession,
        part_number: int,
        stream: BinaryIO,
        length: int,
        cancel: asyncio.Event | None,
    ) -> None:
        try:
            await self._pipeline.put_part(
                session.part.url,
                aiter_stream(stream),
                length=length,
                headers=session.part.headers,
                cancel=cancel,
            )
        except TaskClientError:
            part_upload_failures_total.inc()
            raise
        parts_uploaded_total.inc()
        part_bytes_uploaded_total.inc(length)
        upload_event(
            {
                "event": "upload_part_completed",
                "upload_id": session.upload_id,
                "part_number": part_number,
                "bytes": length,
            }
        )

    async def _start_upload(
        self,
        name: str,
        byte_length: int,
        content_type: str,
        part_number: int | None = None,
        md5sum: str | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> UploadSession:
        body = {
            "file_name": name,
            "file_size": byte_length,
            "content_type": content_type,
            "part_number": part_number,
            "md5sum": md5sum,
        }
        response = await self._pipeline.send("uploads", None, body, "POST", cancel=cancel)
        document = self._pipeline.read_document(response)
        upload_id = document.value("id", int)
        if upload_id is None:
            raise DeserializationError("upload session response carries no id", target="UploadSession", content=response.content)
        return UploadSession(
            upload_id=upload_id,
            byte_length=byte_length,
            content_type=content_type,
            part=PartDescriptor.from_document(document.document("part")),
        )

    async def _next_part(
        self, upload_id: int, part_number: int, md5sum: str | None = None, *, cancel: asyncio.Event | None = None
    ) -> PartDescriptor:
        params = {"part_number": part_number, "md5sum": md5sum}
        response = await self._pipeline.get(f"uploads/{upload_id}/parts", params, cancel=cancel)
        return PartDescriptor.from_document(self._pipeline.read_document(response).document("part"))

    async def _finish_upload(self, upload_id: int, *, cancel: asyncio.Event | None = None) -> None:
        await self._pipeline.patch(build_command("uploads", upload_id), None, {"state": "finished"}, cancel=cancel)
        upload_event({"event": "upload_finished", "upload_id": upload_id})

    async def _create_file(
        self, task_id: int, upload_id: int, local_created_at: datetime, *, cancel: asyncio.Event | None = None
    ) -> File | None:
        body = {"upload_id": upload_id, "task_id": task_id, "local_created_at": local_created_at}
        return await self._pipeline.send_as(File, "files", None, body, "POST", cancel=cancel)
