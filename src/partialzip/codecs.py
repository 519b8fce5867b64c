"""Decompression of member payloads, one-shot or chunk by chunk."""
import bz2
import contextlib
import enum
import zlib
from typing import Iterable, Iterator, Union

import zstandard

from .errors import CodecError, PartialZipError, UnsupportedCompression

# most bytes handed out per decoder step, keeps decompression bombs bounded
OUTPUT_CHUNK = 256 * 1024


class CompressionMethod(enum.Enum):
    STORED = 0
    DEFLATED = 8
    BZIP2 = 12
    ZSTD = 93
    UNSUPPORTED = -1

    @classmethod
    def from_code(cls, code: int) -> "CompressionMethod":
        if code < 0:
            return cls.UNSUPPORTED
        try:
            return cls(code)
        except ValueError:
            return cls.UNSUPPORTED

    @property
    def supported(self) -> bool:
        return self is not CompressionMethod.UNSUPPORTED


_CODEC_ERRORS = (zlib.error, OSError, EOFError, ValueError, zstandard.ZstdError)


@contextlib.contextmanager
def _codec_errors() -> Iterator[None]:
    try:
        yield
    except PartialZipError:
        # transport and offset failures from the chunk source pass through
        raise
    except _CODEC_ERRORS as e:
        raise CodecError(str(e)) from e


def _codec_step(pieces: Iterator[bytes]) -> Iterator[bytes]:
    with _codec_errors():
        yield from pieces


class StreamDecoder:
    """Base decoder: ``feed`` compressed chunks, then ``finish``.

    ``decode`` drives both over an iterable of chunks; no piece it yields is
    longer than OUTPUT_CHUNK.
    """

    def feed(self, data: bytes) -> Iterator[bytes]:
        for i in range(0, len(data), OUTPUT_CHUNK):
            yield data[i:i + OUTPUT_CHUNK]

    def finish(self) -> Iterator[bytes]:
        return iter(())

    def decode(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            yield from _codec_step(self.feed(chunk))
        yield from _codec_step(self.finish())


class DeflateDecoder(StreamDecoder):
    def __init__(self) -> None:
        self._d = zlib.decompressobj(-zlib.MAX_WBITS)

    def feed(self, data: bytes) -> Iterator[bytes]:
        buf = data
        while buf and not self._d.eof:
            out = self._d.decompress(buf, OUTPUT_CHUNK)
            if out:
                yield out
            buf = self._d.unconsumed_tail

    def finish(self) -> Iterator[bytes]:
        # drain what zlib still holds without lifting the output cap
        while not self._d.eof:
            out = self._d.decompress(b"", OUTPUT_CHUNK)
            if not out:
                break
            yield out
        if not self._d.eof:
            raise CodecError("truncated deflate stream")


class Bzip2Decoder(StreamDecoder):
    def __init__(self) -> None:
        self._d = bz2.BZ2Decompressor()

    def feed(self, data: bytes) -> Iterator[bytes]:
        if self._d.eof:
            return
        out = self._d.decompress(data, OUTPUT_CHUNK)
        if out:
            yield out
        while not self._d.eof and not self._d.needs_input:
            out = self._d.decompress(b"", OUTPUT_CHUNK)
            if out:
                yield out

    def finish(self) -> Iterator[bytes]:
        if not self._d.eof:
            raise CodecError("truncated bzip2 stream")
        return iter(())


class _ChunkSource:
    """Read-only file view over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._it = iter(chunks)
        self._buf = b""

    def read(self, size: int = -1) -> bytes:
        while not self._buf:
            chunk = next(self._it, None)
            if chunk is None:
                return b""
            self._buf = bytes(chunk)
        if size is None or size < 0:
            size = len(self._buf)
        out, self._buf = self._buf[:size], self._buf[size:]
        return out

    def close(self) -> None:
        pass


class ZstdDecoder(StreamDecoder):
    """
    zstd is pulled through ``ZstdDecompressor.stream_reader``: the compressed
    chunks become its source and output is read OUTPUT_CHUNK bytes at a time.
    A push-style decompressobj has no output limit.
    """

    def decode(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        reader = zstandard.ZstdDecompressor().stream_reader(
            _ChunkSource(chunks), read_size=OUTPUT_CHUNK, closefd=False
        )
        with reader:
            while True:
                with _codec_errors():
                    out = reader.read(OUTPUT_CHUNK)
                if not out:
                    return
                yield out


_DECODERS = {
    CompressionMethod.STORED: StreamDecoder,
    CompressionMethod.DEFLATED: DeflateDecoder,
    CompressionMethod.BZIP2: Bzip2Decoder,
    CompressionMethod.ZSTD: ZstdDecoder,
}


def decoder_for(method: Union[CompressionMethod, int]) -> StreamDecoder:
    code = method.value if isinstance(method, CompressionMethod) else method
    if not isinstance(method, CompressionMethod):
        method = CompressionMethod.from_code(method)
    try:
        return _DECODERS[method]()
    except KeyError:
        raise UnsupportedCompression(code) from None


def iter_decoded(decoder: StreamDecoder, chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Run compressed *chunks* through *decoder*, wrapping codec failures.

    Errors raised while producing *chunks* (transport, offsets) pass through
    untouched.
    """
    return decoder.decode(chunks)


def decompress(method: Union[CompressionMethod, int], data: bytes) -> bytes:
    return b"".join(iter_decoded(decoder_for(method), [data]))
