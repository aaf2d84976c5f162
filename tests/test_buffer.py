# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import threading
from io import BytesIO

import pytest

from bitmessage.buffer import ByteSource, ChunkedByteSource, InputBuffer, MemoryByteSource
from bitmessage.exceptions import EndOfStreamError, TransportError


class CountingStream:
    """A stream that records the size of every read"""

    def __init__(self, data: bytes) -> None:
        self.stream = BytesIO(data)
        self.reads: list[int] = []

    def read(self, size: int) -> bytes:
        self.reads.append(size)
        return self.stream.read(size)

    @property
    def consumed(self) -> int:
        return self.stream.tell()


class TrickleStream:
    """A stream that returns at most one byte per read"""

    def __init__(self, data: bytes) -> None:
        self.stream = BytesIO(data)

    def read(self, size: int) -> bytes:
        return self.stream.read(min(size, 1))


class FailingStream:
    def read(self, size: int) -> bytes:
        raise ConnectionResetError('Connection reset by peer')


class TestChunkedByteSource:

    def test_protocol(self) -> None:
        assert isinstance(ChunkedByteSource(BytesIO(b''), max_size=0), ByteSource)
        assert isinstance(MemoryByteSource(b''), ByteSource)

    def test_invalid_arguments(self) -> None:
        with pytest.raises(ValueError, match='chunk size must be a positive number'):
            ChunkedByteSource(BytesIO(b''), max_size=10, chunk_size=0)
        with pytest.raises(ValueError, match='maximum size cannot be negative'):
            ChunkedByteSource(BytesIO(b''), max_size=-1)

    def test_lazy_reading(self) -> None:
        data = bytes(range(100))
        stream = CountingStream(data)
        source = ChunkedByteSource(stream, max_size=len(data), chunk_size=16)

        assert stream.reads == []
        assert source.get(0) == 0
        assert stream.reads == [16]
        assert source.get(15) == 15
        assert stream.reads == [16]
        assert source.get(40) == 40
        assert stream.reads == [16, 16, 16]
        assert source.buffered == 48

    def test_last_chunk_is_cut_to_max_size(self) -> None:
        data = bytes(range(100))
        stream = CountingStream(data + b'trailing data that belongs to the next message')
        source = ChunkedByteSource(stream, max_size=len(data), chunk_size=64)

        assert source.get(99) == 99
        assert stream.reads == [64, 36]
        assert stream.consumed == len(data)

    def test_every_byte_is_read_once(self) -> None:
        data = bytes(range(256)) * 4
        stream = CountingStream(data)
        source = ChunkedByteSource(stream, max_size=len(data), chunk_size=100)

        for index in range(len(data)):
            assert source.get(index) == data[index]
        reads = list(stream.reads)
        for index in reversed(range(len(data))):
            assert source.get(index) == data[index]
        assert stream.reads == reads
        assert sum(reads) == len(data)

    def test_ranges_across_chunks(self) -> None:
        data = bytes(range(200))
        source = ChunkedByteSource(BytesIO(data), max_size=len(data), chunk_size=7)

        assert source.get(0, 0) == b''
        assert source.get(5, 3) == data[5:8]
        assert source.get(3, 30) == data[3:33]
        assert source.get(0, 200) == data
        assert source.get(199, 1) == data[199:]

    def test_bounds_are_checked_before_reading(self) -> None:
        stream = CountingStream(bytes(10))
        source = ChunkedByteSource(stream, max_size=10)

        with pytest.raises(IndexError):
            source.get(10)
        with pytest.raises(IndexError):
            source.get(-1)
        with pytest.raises(IndexError):
            source.get(5, 6)
        with pytest.raises(IndexError):
            source.get(0, -1)
        assert stream.reads == []

    def test_short_reads_are_completed(self) -> None:
        data = b'0123456789'
        source = ChunkedByteSource(TrickleStream(data), max_size=len(data), chunk_size=4)

        assert source.get(0, 10) == data

    def test_end_of_stream(self) -> None:
        source = ChunkedByteSource(BytesIO(b'abc'), max_size=10)

        with pytest.raises(EndOfStreamError, match='End of stream after 3 bytes'):
            source.get(5)

    def test_stream_errors(self) -> None:
        source = ChunkedByteSource(FailingStream(), max_size=10)

        with pytest.raises(TransportError, match='Connection reset by peer') as exc_info:
            source.get(0)
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    def test_concurrent_readers(self) -> None:
        data = bytes(range(256)) * 64
        stream = CountingStream(data)
        source = ChunkedByteSource(stream, max_size=len(data), chunk_size=128)
        results: list[bytes] = []

        def reader() -> None:
            results.append(source.get(0, len(data)))

        threads = [threading.Thread(target=reader) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [data] * 8
        assert sum(stream.reads) == len(data)


class TestInputBuffer:

    def test_from_bytes(self) -> None:
        buffer = InputBuffer.from_bytes(b'0123456789')

        assert len(buffer) == 10
        assert buffer.offset == 0
        assert buffer.get(0) == ord('0')
        assert buffer.get(2, 3) == b'234'
        assert bytes(buffer) == b'0123456789'

    def test_of(self) -> None:
        buffer = InputBuffer.from_bytes(b'abc')

        assert InputBuffer.of(buffer) is buffer
        assert bytes(InputBuffer.of(b'abc')) == b'abc'
        assert bytes(InputBuffer.of(memoryview(b'abc'))) == b'abc'

    def test_subwindow(self) -> None:
        buffer = InputBuffer.from_bytes(b'0123456789')
        window = buffer.subwindow(3)

        assert len(window) == 7
        assert window.offset == 3
        assert window.source is buffer.source
        assert window.get(0) == ord('3')
        assert bytes(window) == b'3456789'
        assert bytes(buffer.subwindow(3, 2)) == b'34'
        assert bytes(buffer.subwindow(10)) == b''

    def test_subwindow_is_associative(self) -> None:
        buffer = InputBuffer.from_bytes(bytes(range(50)))

        for a in range(0, 20, 3):
            for b in range(0, 20, 4):
                left = buffer.subwindow(a).subwindow(b)
                right = buffer.subwindow(a + b)
                assert (left.offset, len(left)) == (right.offset, len(right))
                assert bytes(left) == bytes(right)

    def test_bounds(self) -> None:
        buffer = InputBuffer.from_bytes(b'0123456789').subwindow(2, 5)

        with pytest.raises(IndexError):
            buffer.get(5)
        with pytest.raises(IndexError):
            buffer.get(3, 3)
        with pytest.raises(IndexError):
            buffer.subwindow(6)
        with pytest.raises(IndexError):
            buffer.subwindow(2, 4)
        with pytest.raises(IndexError):
            buffer.subwindow(-1)

    def test_subwindow_does_not_read(self) -> None:
        stream = CountingStream(bytes(4096))
        buffer = InputBuffer.from_stream(stream, max_size=4096, chunk_size=512)

        window = buffer.subwindow(1000).subwindow(1000, 100)
        assert stream.reads == []
        assert window.get(0) == 0
        assert stream.consumed == 2048
