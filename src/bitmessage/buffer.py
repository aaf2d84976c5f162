# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import threading
from collections.abc import Buffer
from typing import Protocol, Self, overload, runtime_checkable

from .exceptions import EndOfStreamError, TransportError

__all__ = 'SupportsRead', 'ByteSource', 'MemoryByteSource', 'ChunkedByteSource', 'InputBuffer'  # noqa: RUF022


log = logging.getLogger(__name__)


class SupportsRead(Protocol):
    def read(self, size: int, /) -> bytes | None: ...


@runtime_checkable
class ByteSource(Protocol):
    """A random access source of at most max_size bytes"""

    max_size: int

    @overload
    def get(self, offset: int, /) -> int: ...

    @overload
    def get(self, offset: int, length: int, /) -> bytes: ...


def check_bounds(offset: int, length: int, size: int) -> None:
    if offset < 0 or length < 0 or offset + length > size:
        raise IndexError(f'Range [{offset}, {offset + length}) is outside of the available {size} bytes')


class MemoryByteSource:
    """A byte source for data that is already in memory"""

    def __init__(self, data: Buffer) -> None:
        self.data = memoryview(data).cast('B')
        self.max_size = len(self.data)

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.max_size} bytes>'

    @overload
    def get(self, offset: int, /) -> int: ...

    @overload
    def get(self, offset: int, length: int, /) -> bytes: ...

    def get(self, offset: int, length: int | None = None, /) -> int | bytes:
        if length is None:
            check_bounds(offset, 1, self.max_size)
            return self.data[offset]
        check_bounds(offset, length, self.max_size)
        return self.data[offset:offset + length].tobytes()


class ChunkedByteSource:
    """
    A byte source that reads a blocking stream lazily, one chunk at a time.

    Chunks are only read when a position beyond the already buffered data is
    requested, and once read they are kept for the lifetime of the source, so
    every byte is read from the stream exactly once. The last chunk is cut
    short so that no more than max_size bytes are ever consumed from the
    stream. A stream that ends early raises EndOfStreamError.

    Filling the chunk list is serialized with a lock, which makes it safe to
    read the same source from multiple threads.
    """

    def __init__(self, stream: SupportsRead, *, max_size: int, chunk_size: int = 1024) -> None:
        if chunk_size <= 0:
            raise ValueError(f'The chunk size must be a positive number: {chunk_size!r}')
        if max_size < 0:
            raise ValueError(f'The maximum size cannot be negative: {max_size!r}')
        self.stream = stream
        self.max_size = max_size
        self.chunk_size = chunk_size
        self._chunks: list[bytes] = []
        self._buffered = 0
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self._buffered}/{self.max_size} bytes buffered in chunks of {self.chunk_size}>'

    @property
    def buffered(self) -> int:
        """The number of bytes read from the stream so far"""
        return self._buffered

    @overload
    def get(self, offset: int, /) -> int: ...

    @overload
    def get(self, offset: int, length: int, /) -> bytes: ...

    def get(self, offset: int, length: int | None = None, /) -> int | bytes:
        if length is None:
            check_bounds(offset, 1, self.max_size)
            self._fill(offset + 1)
            index, position = divmod(offset, self.chunk_size)
            return self._chunks[index][position]
        check_bounds(offset, length, self.max_size)
        if length == 0:
            return b''
        self._fill(offset + length)
        first, start = divmod(offset, self.chunk_size)
        last, end = divmod(offset + length - 1, self.chunk_size)
        if first == last:
            return self._chunks[first][start:end + 1]
        return b''.join([self._chunks[first][start:], *self._chunks[first + 1:last], self._chunks[last][:end + 1]])

    def _fill(self, size: int) -> None:
        if self._buffered >= size:
            return
        with self._lock:
            while self._buffered < size:
                chunk = self._read_exactly(min(self.chunk_size, self.max_size - self._buffered))
                self._chunks.append(chunk)
                self._buffered += len(chunk)
                log.debug('Read chunk %d (%d bytes) from %r', len(self._chunks) - 1, len(chunk), self.stream)

    def _read_exactly(self, size: int) -> bytes:
        data = bytearray()
        while len(data) < size:
            try:
                chunk = self.stream.read(size - len(data))
            except TransportError:
                raise
            except OSError as exc:
                raise TransportError(f'Failed to read from stream: {exc}') from exc
            if not chunk:
                raise EndOfStreamError(f'End of stream after {self._buffered + len(data)} bytes while expecting {self._buffered + size}')
            data += chunk
        return bytes(data)


class InputBuffer:
    """
    A read-only window into a byte source.

    The window addresses length bytes of its source starting at offset and
    all accessors take positions relative to the start of the window. Sub
    windows share the same source, so creating them never copies or reads
    any data. Bounds are checked before the source is accessed.
    """

    __slots__ = 'source', 'offset', 'length'

    source: ByteSource
    offset: int
    length: int

    def __init__(self, source: ByteSource, offset: int = 0, length: int | None = None) -> None:
        if length is None:
            length = source.max_size - offset
        check_bounds(offset, length, source.max_size)
        self.source = source
        self.offset = offset
        self.length = length

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: [{self.offset}, {self.offset + self.length}) of {self.source!r}>'

    def __len__(self) -> int:
        return self.length

    def __bytes__(self) -> bytes:
        return self.get(0, self.length)

    @classmethod
    def from_bytes(cls, data: Buffer) -> Self:
        return cls(MemoryByteSource(data))

    @classmethod
    def from_stream(cls, stream: SupportsRead, *, max_size: int, chunk_size: int = 1024) -> Self:
        return cls(ChunkedByteSource(stream, max_size=max_size, chunk_size=chunk_size))

    @classmethod
    def of(cls, data: Self | Buffer) -> Self:
        """Return data if it already is an InputBuffer or wrap it into one otherwise"""
        if isinstance(data, InputBuffer):
            return data
        return cls.from_bytes(data)

    @overload
    def get(self, offset: int, /) -> int: ...

    @overload
    def get(self, offset: int, length: int, /) -> bytes: ...

    def get(self, offset: int, length: int | None = None, /) -> int | bytes:
        if length is None:
            check_bounds(offset, 1, self.length)
            return self.source.get(self.offset + offset)
        check_bounds(offset, length, self.length)
        return self.source.get(self.offset + offset, length)

    def subwindow(self, offset: int, length: int | None = None) -> Self:
        if length is None:
            check_bounds(offset, 0, self.length)
            length = self.length - offset
        check_bounds(offset, length, self.length)
        return self.__class__(self.source, self.offset + offset, length)
