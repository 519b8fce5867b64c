import bz2
import io
import re
import struct
import threading
import zipfile
import zlib
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import List, Optional

import pytest
import zstandard

from partialzip.options import PartialZipOptions
from partialzip.transport import RangeTransport

FAKE_URL = "http://fake.invalid/test.zip"

# 2022-08-12 15:24:30 and 15:24:36 in MS-DOS format
DOS_DATE = ((2022 - 1980) << 9) | (8 << 5) | 12
DOS_TIME_1 = (15 << 11) | (24 << 5) | (30 // 2)
DOS_TIME_2 = (15 << 11) | (24 << 5) | (36 // 2)


@dataclass
class RawMember:
    """A member written byte by byte, so tests control every header field."""

    name: bytes
    data: bytes
    method: int = 0
    payload: Optional[bytes] = None
    flags: int = 0
    crc: Optional[int] = None
    usize: Optional[int] = None
    dos_time: int = DOS_TIME_1
    local_extra: bytes = b""
    # central directory copy: sentinel sizes/offset plus a 0x0001 extra field
    zip64: bool = False
    cd_extra: Optional[bytes] = None


def compress(method: int, data: bytes) -> bytes:
    if method == 8:
        c = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
        return c.compress(data) + c.flush()
    if method == 12:
        return bz2.compress(data)
    if method == 93:
        return zstandard.ZstdCompressor().compress(data)
    return data


def build_zip(members: List[RawMember], comment: bytes = b"", prefix: bytes = b"") -> bytes:
    body = io.BytesIO()
    central = io.BytesIO()
    for m in members:
        payload = m.payload if m.payload is not None else compress(m.method, m.data)
        crc = m.crc if m.crc is not None else zlib.crc32(m.data)
        usize = m.usize if m.usize is not None else len(m.data)
        offset = body.tell()
        body.write(struct.pack(
            "<4s2B4HL2L2H", b"PK\x03\x04", 20, 0, m.flags, m.method, m.dos_time, DOS_DATE,
            crc, len(payload), usize, len(m.name), len(m.local_extra),
        ))
        body.write(m.name + m.local_extra + payload)
        cd_sizes = (len(payload), usize, offset)
        extra = b""
        if m.zip64:
            cd_sizes = (0xFFFFFFFF, 0xFFFFFFFF, 0xFFFFFFFF)
            extra = struct.pack("<2H3Q", 0x0001, 24, usize, len(payload), offset)
        if m.cd_extra is not None:
            extra = m.cd_extra
        csize_cd, usize_cd, offset_cd = cd_sizes
        central.write(struct.pack(
            "<4s4B4HL2L5H2L", b"PK\x01\x02", 45 if m.zip64 else 20, 3, 20, 0, m.flags, m.method,
            m.dos_time, DOS_DATE, crc, csize_cd, usize_cd, len(m.name), len(extra), 0, 0, 0, 0,
            offset_cd,
        ))
        central.write(m.name + extra)
    cd = central.getvalue()
    eocd = struct.pack(
        "<4s4H2LH", b"PK\x05\x06", 0, 0, len(members), len(members), len(cd), body.tell(),
        len(comment),
    )
    return prefix + body.getvalue() + cd + eocd + comment


def to_zip64(data: bytes) -> bytes:
    """Move the directory pointers of a comment-less archive into ZIP64 records."""
    eocd_pos = len(data) - 22
    _, _, _, _, count, cd_size, cd_offset, _ = struct.unpack("<4s4H2LH", data[eocd_pos:])
    record = struct.pack(
        "<4sQ2H2L4Q", b"PK\x06\x06", 44, 45, 45, 0, 0, count, count, cd_size, cd_offset
    )
    locator = struct.pack("<4sLQL", b"PK\x06\x07", 0, eocd_pos, 1)
    eocd = struct.pack(
        "<4s4H2LH", b"PK\x05\x06", 0, 0, 0xFFFF, 0xFFFF, 0xFFFFFFFF, 0xFFFFFFFF, 0
    )
    return data[:eocd_pos] + record + locator + eocd


def stdlib_zip(files, compression=zipfile.ZIP_DEFLATED, comment=b"") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, data, date_time in files:
            zf.writestr(zipfile.ZipInfo(name, date_time=date_time), data, compress_type=compression)
        zf.comment = comment
    return buf.getvalue()


@pytest.fixture
def test_zip() -> bytes:
    """Two deflated five byte members: 1.txt and 2.txt."""
    return stdlib_zip([
        ("1.txt", b"AAAA\n", (2022, 8, 12, 15, 24, 30)),
        ("2.txt", b"BBBB\n", (2022, 8, 12, 15, 24, 36)),
    ])


class FakeTransport(RangeTransport):
    """Serves ranges out of memory and records every request."""

    def __init__(self, data: bytes, partial: bool = True, max_chunk: Optional[int] = None):
        super().__init__(PartialZipOptions())
        self.data = data
        self.partial = partial
        self.max_chunk = max_chunk
        self.calls = []
        self.closed = False

    def probe_size(self, url: str) -> int:
        self.calls.append(("probe",))
        return len(self.data)

    def fetch_range(self, url: str, start: int, end: int) -> bytes:
        self.calls.append(("range", start, end))
        assert 0 <= start <= end < len(self.data), (start, end)
        if self.max_chunk is not None:
            end = min(end, start + self.max_chunk - 1)
        return self.data[start:end + 1]

    def fetch_exact(self, url: str, first_byte: int):
        self.calls.append(("exact", first_byte))
        if self.partial:
            return self.data[first_byte:first_byte + 1], True
        return self.data[first_byte:first_byte + 2], False

    def close(self) -> None:
        self.closed = True

    @property
    def ranges(self):
        return [c[1:] for c in self.calls if c[0] == "range"]


# local HTTP server

_RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")
WEAK_ETAG = 'W/"abc"'
LAST_MODIFIED = "Fri, 12 Aug 2022 15:24:36 GMT"


class RangeHandler(BaseHTTPRequestHandler):
    """
    /files/<name>    honours Range
    /norange/<name>  ignores Range, always 200
    /redirect        302 to /files/test.zip
    /chain/<n>       n redirects, then /files/test.zip
    /loop            redirects to itself
    /weak/<name>     weak ETag plus Last-Modified; a Range with any If-Range
                     other than the Last-Modified date gets a full 200
    """

    def log_message(self, *args) -> None:
        pass

    def do_HEAD(self) -> None:
        self._serve(head=True)

    def do_GET(self) -> None:
        self._serve(head=False)

    def _redirect(self, location: str) -> None:
        self.send_response(302)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _serve(self, head: bool) -> None:
        self.server.requests.append((self.command, self.path, self.headers.get("Range")))
        self.server.seen_headers.append(dict(self.headers))
        path = self.path
        if path == "/redirect":
            return self._redirect("/files/test.zip")
        if path == "/loop":
            return self._redirect("/loop")
        if path.startswith("/chain/"):
            n = int(path.rsplit("/", 1)[1])
            return self._redirect(f"/chain/{n - 1}" if n > 1 else "/files/test.zip")

        kind, _, name = path.strip("/").partition("/")
        data = self.server.files.get(name)
        if kind not in ("files", "norange", "weak") or data is None:
            self.send_error(404)
            return

        rng = self.headers.get("Range")
        m = _RANGE_RE.match(rng or "")
        if_range = self.headers.get("If-Range")
        honour = kind == "files" or (
            kind == "weak" and if_range in (None, LAST_MODIFIED)
        )
        if honour and m:
            start = int(m.group(1))
            end = int(m.group(2)) if m.group(2) else len(data) - 1
            if start >= len(data):
                self.send_response(416)
                self.send_header("Content-Range", f"bytes */{len(data)}")
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            end = min(end, len(data) - 1)
            body = data[start:end + 1]
            self.send_response(206)
            self.send_header("Content-Range", f"bytes {start}-{end}/{len(data)}")
        else:
            body = data
            self.send_response(200)
        if kind in ("files", "weak"):
            self.send_header("Accept-Ranges", "bytes")
        if kind == "weak":
            self.send_header("ETag", WEAK_ETAG)
            self.send_header("Last-Modified", LAST_MODIFIED)
        self.send_header("Content-Type", "application/zip")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if not head:
            self.wfile.write(body)


@pytest.fixture
def http_server(test_zip, monkeypatch):
    for var in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(var, raising=False)
    server = ThreadingHTTPServer(("127.0.0.1", 0), RangeHandler)
    server.files = {"test.zip": test_zip, "invalid.zip": b"this is not a zip archive" * 4}
    server.requests = []
    server.seen_headers = []
    server.base_url = f"http://127.0.0.1:{server.server_port}"
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def zip_file_url(tmp_path, test_zip):
    path = tmp_path / "test.zip"
    path.write_bytes(test_zip)
    return f"file://localhost{path}"
