import asyncio
import io
import os
from collections.abc import AsyncIterator
from typing import BinaryIO

DEFAULT_READ_SIZE = 64 * 1024


class StreamWindow(io.RawIOBase):
    """Bounded view over [offset, offset + length) of a borrowed seekable stream.

    The base stream is repositioned before every read, so one base stream can
    back several non-overlapping windows in turn. Closing the window leaves the
    base stream open.
    """

    def __init__(self, base: BinaryIO, offset: int, length: int) -> None:
        super().__init__()
        if offset < 0 or length < 0:
            raise ValueError("offset and length must be non-negative")
        if not base.seekable():
            raise ValueError("stream windows need a seekable base stream")
        self._base = base
        self.offset = offset
        self.length = length
        self._position = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def seek(self, pos: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            target = pos
        elif whence == io.SEEK_CUR:
            target = self._position + pos
        elif whence == io.SEEK_END:
            target = self.length + pos
        else:
            raise ValueError(f"invalid whence: {whence}")
        if target < 0:
            raise ValueError("negative seek position")
        self._position = target
        return target

    @property
    def remaining(self) -> int:
        return max(0, self.length - self._position)

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed stream window")
        view = memoryview(buffer).cast("B")
        size = min(len(view), self.remaining)
        if size == 0:
            return 0
        self._base.seek(self.offset + self._position)
        data = self._base.read(size)
        if not data:
            return 0
        read = len(data)
        view[:read] = data
        self._position += read
        return read


def stream_length(stream: BinaryIO) -> int:
    if stream.seekable():
        current = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(current)
        return end
    length = getattr(stream, "length", None)
    if length is not None:
        return int(length)
    try:
        return os.fstat(stream.fileno()).st_size
    except (AttributeError, OSError, io.UnsupportedOperation) as exc:
        raise ValueError("cannot determine the length of a non-seekable stream") from exc


async def aiter_stream(stream: BinaryIO, chunk_size: int = DEFAULT_READ_SIZE) -> AsyncIterator[bytes]:
    while True:
        chunk = await asyncio.to_thread(stream.read, chunk_size)
        if not chunk:
            break
        yield chunk
