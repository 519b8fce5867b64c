"""
Central directory index and member extraction over a PartialReader.

Only the byte ranges that matter are requested:
  • the trailing window holding the end-of-central-directory record
  • the ZIP64 locator/record, when the classic record carries sentinels
  • the central directory, as a single range
  • per extraction, the 30-byte local header and then the payload

Every size and offset read from the archive is checked against the
resource size before it is turned into a range.
"""
import logging
import struct
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Callable, Iterator, List, Optional, Sequence, Tuple

from .codecs import CompressionMethod, decoder_for, iter_decoded
from .errors import (
    ChecksumMismatch,
    CodecError,
    EncryptedMember,
    FileNotFound,
    MalformedArchive,
    UnsupportedCompression,
)
from .reader import PartialReader
from .utils import checked_add, checked_range, checked_sub

logger = logging.getLogger(__name__)

WarningCallback = Callable[[int, str], None]
ProgressCallback = Callable[[int], None]

# end of central directory
EOCD_SIGNATURE = b"PK\x05\x06"
EOCD_STRUCT = struct.Struct("<4s4H2LH")
EOCD_SIZE = EOCD_STRUCT.size  # 22
MAX_COMMENT = 0xFFFF

# zip64 end of central directory locator and record
ZIP64_LOCATOR_SIGNATURE = b"PK\x06\x07"
ZIP64_LOCATOR_STRUCT = struct.Struct("<4sLQL")
ZIP64_EOCD_SIGNATURE = b"PK\x06\x06"
ZIP64_EOCD_STRUCT = struct.Struct("<4sQ2H2L4Q")
ZIP64_EXTRA_ID = 0x0001

# central directory entry
CD_SIGNATURE = b"PK\x01\x02"
CD_STRUCT = struct.Struct("<4s4B4HL2L5H2L")
CD_SIZE = CD_STRUCT.size  # 46

# local file header
LFH_SIGNATURE = b"PK\x03\x04"
LFH_STRUCT = struct.Struct("<4s2B4HL2L2H")
LFH_SIZE = LFH_STRUCT.size  # 30

FLAG_ENCRYPTED = 0x0001

U16_SENTINEL = 0xFFFF
U32_SENTINEL = 0xFFFFFFFF


def dos_datetime(date: int, time: int) -> Optional[datetime]:
    """MS-DOS date/time fields to a naive datetime, None when out of range."""
    try:
        return datetime(
            ((date >> 9) & 0x7F) + 1980,
            (date >> 5) & 0x0F,
            date & 0x1F,
            time >> 11,
            (time >> 5) & 0x3F,
            (time & 0x1F) * 2,
        )
    except ValueError:
        return None


@dataclass(frozen=True)
class MemberEntry:
    """One central directory record. ``name`` is None when it was not valid UTF-8."""

    name: Optional[str]
    compressed_size: int
    uncompressed_size: int
    method_code: int
    local_header_offset: int
    last_modified: Optional[datetime] = None
    crc32: int = 0
    flags: int = 0

    @property
    def compression_method(self) -> CompressionMethod:
        return CompressionMethod.from_code(self.method_code)

    @property
    def supported(self) -> bool:
        return self.compression_method.supported

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)

    @property
    def is_dir(self) -> bool:
        return self.name is not None and self.name.endswith("/")


@dataclass(frozen=True)
class LocalHeader:
    method_code: int
    flags: int
    last_modified: Optional[datetime]
    name_length: int
    extra_length: int

    @property
    def data_offset_delta(self) -> int:
        return LFH_SIZE + self.name_length + self.extra_length


def _read_exact(reader: PartialReader, offset: int, length: int) -> bytes:
    """Read *length* bytes at *offset*; transports may hand back short reads."""
    start, _ = checked_range(offset, length, reader.size)
    reader.seek(start)
    out = bytearray()
    while len(out) < length:
        chunk = reader.read(length - len(out))
        if not chunk:
            raise MalformedArchive(
                f"unexpected end of data at {start + len(out)}, wanted {length} bytes at {start}"
            )
        out += chunk
    return bytes(out)


def _zip64_extra(
    extra: bytes, usize: int, csize: int, offset: int
) -> Tuple[int, int, int]:
    """Replace sentinel sizes/offset with the values of the ZIP64 extra field."""
    pos = 0
    while pos + 4 <= len(extra):
        header_id, size = struct.unpack_from("<2H", extra, pos)
        body = extra[pos + 4:pos + 4 + size]
        if header_id == ZIP64_EXTRA_ID:
            values = []
            for i in range(0, len(body) - len(body) % 8, 8):
                values.append(struct.unpack_from("<Q", body, i)[0])
            # fields appear only for the values that overflowed, in this order
            try:
                if usize == U32_SENTINEL:
                    usize = values.pop(0)
                if csize == U32_SENTINEL:
                    csize = values.pop(0)
                if offset == U32_SENTINEL:
                    offset = values.pop(0)
            except IndexError:
                raise MalformedArchive("truncated zip64 extra field") from None
            return usize, csize, offset
        pos += 4 + size
    return usize, csize, offset


class ArchiveIndex(Sequence[MemberEntry]):
    """Ordered, read-only table of members in central directory order."""

    def __init__(self, entries: Sequence[MemberEntry], comment: bytes = b"") -> None:
        self._entries: Tuple[MemberEntry, ...] = tuple(entries)
        self.comment = comment

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, i):
        return self._entries[i]

    def __iter__(self) -> Iterator[MemberEntry]:
        return iter(self._entries)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ArchiveIndex):
            return NotImplemented
        return self._entries == other._entries and self.comment == other.comment

    def names(self) -> List[str]:
        return [e.name for e in self._entries if e.name is not None]

    def find(self, name: str) -> MemberEntry:
        # duplicates are legal in a zip; the first one wins
        for entry in self._entries:
            if entry.name == name:
                return entry
        raise FileNotFound(name)

    @classmethod
    def build(
        cls,
        reader: PartialReader,
        on_warning: Optional[WarningCallback] = None,
    ) -> "ArchiveIndex":
        total = reader.size
        if total < EOCD_SIZE:
            raise MalformedArchive(f"{total} bytes is too small for a zip archive")

        window_len = min(total, MAX_COMMENT + EOCD_SIZE)
        window_start = total - window_len
        window = _read_exact(reader, window_start, window_len)

        eocd_pos = cls._find_eocd(window)
        (_, disk, cd_disk, _, count, cd_size, cd_offset, comment_len) = EOCD_STRUCT.unpack_from(
            window, eocd_pos
        )
        comment = window[eocd_pos + EOCD_SIZE:eocd_pos + EOCD_SIZE + comment_len]
        eocd_abs = window_start + eocd_pos
        # where the central directory really ends (before zip64 records, if any)
        cd_end_abs = eocd_abs

        if U16_SENTINEL in (count, disk, cd_disk) or U32_SENTINEL in (cd_size, cd_offset):
            count, cd_size, cd_offset, cd_end_abs = cls._read_zip64(
                reader, window, window_start, eocd_pos
            )
        elif disk != 0 or cd_disk != 0:
            raise MalformedArchive("multi-disk archives are not supported")

        if cd_size > cd_end_abs:
            raise MalformedArchive(f"central directory size {cd_size} exceeds archive")
        cd_start_abs = checked_sub(cd_end_abs, cd_size)
        # bytes prepended to the archive (self-extractors) shift every offset
        if cd_offset > cd_start_abs:
            raise MalformedArchive(
                f"central directory offset {cd_offset} past its end at {cd_end_abs}"
            )
        base = cd_start_abs - cd_offset
        if base:
            logger.debug("archive starts %d bytes into the resource", base)

        logger.debug(
            "eocd at %#x: %d entries, central directory %#x+%#x",
            eocd_abs, count, cd_start_abs, cd_size,
        )
        cd = _read_exact(reader, cd_start_abs, cd_size) if cd_size else b""
        entries = cls._parse_central_directory(cd, count, base, total, on_warning)
        return cls(entries, comment)

    @staticmethod
    def _find_eocd(window: bytes) -> int:
        """Offset of the end of central directory record inside *window*.

        Scans backward. The comment may contain the signature too, so the last
        complete record whose comment length reaches exactly the end of the
        resource wins; failing that, the last complete record (trailing junk).
        """
        fallback = None
        end = len(window)
        while True:
            pos = window.rfind(EOCD_SIGNATURE, 0, end)
            if pos < 0:
                break
            end = pos + len(EOCD_SIGNATURE) - 1
            if pos + EOCD_SIZE > len(window):
                continue
            (comment_len,) = struct.unpack_from("<H", window, pos + EOCD_SIZE - 2)
            if pos + EOCD_SIZE + comment_len == len(window):
                return pos
            if fallback is None:
                fallback = pos
        if fallback is None:
            raise MalformedArchive("end of central directory signature not found")
        logger.debug("end of central directory record followed by trailing data")
        return fallback

    @staticmethod
    def _read_zip64(
        reader: PartialReader, window: bytes, window_start: int, eocd_pos: int
    ) -> Tuple[int, int, int, int]:
        locator_abs = window_start + eocd_pos - ZIP64_LOCATOR_STRUCT.size
        if locator_abs < 0:
            raise MalformedArchive("zip64 end of central directory locator missing")
        if eocd_pos >= ZIP64_LOCATOR_STRUCT.size:
            locator = window[eocd_pos - ZIP64_LOCATOR_STRUCT.size:eocd_pos]
        else:
            locator = _read_exact(reader, locator_abs, ZIP64_LOCATOR_STRUCT.size)
        sig, disk, record_abs, disks = ZIP64_LOCATOR_STRUCT.unpack(locator)
        if sig != ZIP64_LOCATOR_SIGNATURE:
            raise MalformedArchive("zip64 end of central directory locator missing")
        if disks > 1 or disk != 0:
            raise MalformedArchive("multi-disk archives are not supported")

        # the locator's offset is relative to the archive start; prefer the
        # record sitting right before the locator, as zipfile does
        record_abs_guess = locator_abs - ZIP64_EOCD_STRUCT.size
        if record_abs_guess < 0:
            raise MalformedArchive("zip64 end of central directory record missing")
        record = _read_exact(reader, record_abs_guess, ZIP64_EOCD_STRUCT.size)
        if record[:4] != ZIP64_EOCD_SIGNATURE:
            record_abs_guess = record_abs
            record = _read_exact(reader, record_abs, ZIP64_EOCD_STRUCT.size)
        (sig, _, _, _, disk_no, cd_disk, _, count, cd_size, cd_offset) = ZIP64_EOCD_STRUCT.unpack(
            record
        )
        if sig != ZIP64_EOCD_SIGNATURE:
            raise MalformedArchive("bad zip64 end of central directory signature")
        if disk_no != 0 or cd_disk != 0:
            raise MalformedArchive("multi-disk archives are not supported")
        return count, cd_size, cd_offset, record_abs_guess

    @staticmethod
    def _parse_central_directory(
        cd: bytes,
        count: int,
        base: int,
        total: int,
        on_warning: Optional[WarningCallback],
    ) -> List[MemberEntry]:
        def warn(i: int, message: str) -> None:
            logger.warning("central directory entry %d: %s", i, message)
            if on_warning is not None:
                on_warning(i, message)

        # every record needs at least 46 bytes, so the count is bounded by the data
        if count > len(cd) // CD_SIZE:
            raise MalformedArchive(
                f"{count} entries cannot fit in a {len(cd)} byte central directory"
            )

        entries: List[MemberEntry] = []
        pos = 0
        for i in range(count):
            if pos + CD_SIZE > len(cd):
                raise MalformedArchive(f"truncated central directory at entry {i}")
            (
                sig, _, _, _, _, flags, method, mtime, mdate, crc,
                csize, usize, name_len, extra_len, comment_len, _, _, _, offset,
            ) = CD_STRUCT.unpack_from(cd, pos)
            if sig != CD_SIGNATURE:
                raise MalformedArchive(f"bad central directory signature at entry {i}")
            name_start = pos + CD_SIZE
            extra_start = name_start + name_len
            next_pos = extra_start + extra_len + comment_len
            if next_pos > len(cd):
                raise MalformedArchive(f"truncated central directory at entry {i}")
            raw_name = cd[name_start:extra_start]
            extra = cd[extra_start:extra_start + extra_len]
            pos = next_pos

            if U32_SENTINEL in (usize, csize, offset):
                usize, csize, offset = _zip64_extra(extra, usize, csize, offset)

            try:
                name: Optional[str] = raw_name.decode("utf-8")
            except UnicodeDecodeError:
                name = None
                warn(i, f"file name {raw_name!r} is not valid UTF-8, entry kept without a name")

            offset = checked_add(offset, base)
            if offset >= total or offset + csize > total:
                warn(i, f"local header offset {offset} + {csize} bytes outside archive")

            entries.append(
                MemberEntry(
                    name=name,
                    compressed_size=csize,
                    uncompressed_size=usize,
                    method_code=method,
                    local_header_offset=offset,
                    last_modified=dos_datetime(mdate, mtime),
                    crc32=crc,
                    flags=flags,
                )
            )
        return entries


class MemberExtractor:
    """
    Extracts one member at a time:
      Lookup -> HeaderFetch -> PayloadFetch -> Decompress -> Done
    Any step may fail; nothing is retried.
    """

    def __init__(self, reader: PartialReader, index: ArchiveIndex, chunk_size: int = 1024 * 1024) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.reader = reader
        self.index = index
        self.chunk_size = chunk_size

    def read_local_header(self, entry: MemberEntry) -> LocalHeader:
        raw = _read_exact(self.reader, entry.local_header_offset, LFH_SIZE)
        (sig, _, _, flags, method, mtime, mdate, _, _, _, name_len, extra_len) = LFH_STRUCT.unpack(raw)
        if sig != LFH_SIGNATURE:
            raise MalformedArchive(
                f"bad local file header signature at {entry.local_header_offset}"
            )
        return LocalHeader(method, flags, dos_datetime(mdate, mtime), name_len, extra_len)

    def payload_range(self, entry: MemberEntry, header: LocalHeader) -> Optional[Tuple[int, int]]:
        """Inclusive range of the compressed bytes, None for an empty payload."""
        start = checked_add(entry.local_header_offset, header.data_offset_delta)
        if entry.compressed_size == 0:
            return None
        return checked_range(start, entry.compressed_size, self.reader.size)

    def iter_payload(
        self, start: int, end: int, progress: Optional[ProgressCallback] = None
    ) -> Iterator[bytes]:
        pos = start
        while pos <= end:
            length = min(self.chunk_size, end - pos + 1)
            chunk = _read_exact(self.reader, pos, length)
            pos += len(chunk)
            if progress is not None:
                progress(len(chunk))
            yield chunk

    def extract(
        self,
        name: str,
        sink: BinaryIO,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Write the decompressed bytes of *name* to *sink*, return the count."""
        entry = self.index.find(name)
        if not entry.supported:
            raise UnsupportedCompression(entry.method_code)
        if entry.encrypted:
            raise EncryptedMember(name)
        return self.extract_entry(entry, sink, progress)

    def extract_entry(
        self,
        entry: MemberEntry,
        sink: BinaryIO,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        decoder = decoder_for(entry.method_code)
        header = self.read_local_header(entry)
        span = self.payload_range(entry, header)
        logger.debug("extracting %s: payload %s, method %s", entry.name, span, entry.compression_method.name)
        chunks = self.iter_payload(*span, progress=progress) if span else iter(())

        written = 0
        crc = 0
        for piece in iter_decoded(decoder, chunks):
            written += len(piece)
            if written > entry.uncompressed_size:
                raise CodecError(
                    f"{entry.name}: output exceeds declared size of {entry.uncompressed_size} bytes"
                )
            crc = zlib.crc32(piece, crc)
            sink.write(piece)

        if written != entry.uncompressed_size:
            raise CodecError(
                f"{entry.name}: got {written} bytes, expected {entry.uncompressed_size}"
            )
        if crc != entry.crc32:
            raise ChecksumMismatch(f"{entry.name}: {crc:08x} != {entry.crc32:08x}")
        return written
