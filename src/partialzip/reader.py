import io
import logging
from typing import Optional

from .errors import InvalidSeek, InvalidUrl, OffsetOverflowError, RangeNotSupported
from .options import PartialZipOptions
from .transport import RangeTransport, transport_for
from .utils import U64_MAX, checked_add, checked_sub, url_is_valid

logger = logging.getLogger(__name__)


class PartialReader(io.RawIOBase):
    """
    Seekable raw stream over a remote resource, fetched lazily by range:
      • one size probe at construction (+ optional 1-byte range preflight)
      • every read(n) is exactly one ranged request clamped to the size
      • seek is pure position arithmetic, checked against the u64 range
      • no cache and no read-ahead; callers pick their own buffering

    Thread safety: none. One reader per consumer, or serialize externally.
    """

    def __init__(
        self,
        url: str,
        options: Optional[PartialZipOptions] = None,
        transport: Optional[RangeTransport] = None,
    ) -> None:
        if not url_is_valid(url):
            raise InvalidUrl(str(url))
        self.url = url
        self.options = options or PartialZipOptions()

        self._external_transport = transport is not None
        self.t = transport or transport_for(url, self.options)

        # Stream state
        self.pos = 0
        self.size = 0

        try:
            self._init_remote()
        except BaseException:
            self._close_transport()
            raise

    @classmethod
    def with_check_range(cls, url: str, check_range: bool) -> "PartialReader":
        return cls(url, PartialZipOptions(check_range=check_range))

    @property
    def file_size(self) -> int:
        return self.size

    # io.RawIOBase
    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self.pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            base = 0
        elif whence == io.SEEK_CUR:
            base = self.pos
        elif whence == io.SEEK_END:
            base = self.size
        else:
            raise ValueError("Invalid whence")
        new_pos = base + offset
        # beyond the end is fine, the next read reports EOF
        if new_pos < 0 or new_pos > U64_MAX:
            raise InvalidSeek(f"{base} + {offset}")
        self.pos = new_pos
        logger.debug("seek -> %#x", self.pos)
        return self.pos

    def read(self, n: int = -1) -> bytes:
        if self.pos >= self.size:
            return b""
        if n is None or n < 0:
            n = self.size - self.pos
        if n == 0:
            return b""
        start = self.pos
        end = min(checked_sub(checked_add(start, n), 1), checked_sub(self.size, 1))
        if end < start:
            raise OffsetOverflowError(f"end < start: {end} < {start}")
        logger.debug("read range %#x-%#x (size %#x)", start, end, self.size)
        data = self.t.fetch_range(self.url, start, end)
        if len(data) > end - start + 1:
            data = data[: end - start + 1]
        self.pos = checked_add(self.pos, len(data))
        return data

    def readinto(self, b) -> int:
        mv = memoryview(b)
        n = len(mv)
        if n == 0:
            return 0
        data = self.read(n)
        mv[: len(data)] = data
        return len(data)

    def close(self) -> None:
        try:
            if not self.closed:
                self._close_transport()
        finally:
            super().close()

    # internals
    def _close_transport(self) -> None:
        # may run from __del__ on a half-built reader
        t = getattr(self, "t", None)
        if t is not None and not getattr(self, "_external_transport", True):
            t.close()

    def _init_remote(self) -> None:
        size = self.t.probe_size(self.url)
        if size < 0 or size > U64_MAX:
            raise OffsetOverflowError(f"invalid content length {size}")
        self.size = size
        logger.debug("%s: %d bytes", self.url, self.size)
        if self.options.check_range:
            # a 206 carrying exactly one byte, or we would be pulling full bodies
            body, partial = self.t.fetch_exact(self.url, 0)
            if len(body) != 1 or not partial:
                raise RangeNotSupported(self.url)

    def __len__(self) -> int:
        return self.size
