import contextlib
import io
import logging
import os
import posixpath
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, List, Optional, Sequence, Tuple, Union

from .archive import ArchiveIndex, MemberExtractor, ProgressCallback, WarningCallback
from .codecs import CompressionMethod
from .errors import PartialZipError
from .options import PartialZipOptions
from .reader import PartialReader
from .transport import RangeTransport

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class PartialZipFileDetailed:
    name: str
    compressed_size: int
    compression_method: CompressionMethod
    supported: bool
    last_modified: Optional[datetime]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "compressed_size": self.compressed_size,
            "compression_method": self.compression_method.name,
            "supported": self.supported,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }


class PartialZip:
    """
    A zip archive behind a URL, read without downloading it whole.

    Opening costs one size probe (plus the optional range preflight), one
    ranged read for the trailing window and one for the central directory.
    Listing names is free afterwards; each extraction costs a local header
    read plus the payload.

    Usage::

        with PartialZip("https://example.com/firmware.zip") as pz:
            print(pz.list_names())
            data = pz.download("boot.img")
    """

    def __init__(
        self,
        url: str,
        options: Optional[PartialZipOptions] = None,
        transport: Optional[RangeTransport] = None,
        on_warning: Optional[WarningCallback] = None,
    ) -> None:
        self.options = options or PartialZipOptions()
        self._reader = PartialReader(url, self.options, transport=transport)
        try:
            self._index = ArchiveIndex.build(self._reader, on_warning=on_warning)
        except BaseException:
            self._reader.close()
            raise
        self._extractor = MemberExtractor(self._reader, self._index, self.options.chunk_size)
        logger.debug("%s: %d members", url, len(self._index))

    @classmethod
    def open(
        cls,
        url: str,
        options: Optional[PartialZipOptions] = None,
        transport: Optional[RangeTransport] = None,
        on_warning: Optional[WarningCallback] = None,
    ) -> "PartialZip":
        return cls(url, options, transport=transport, on_warning=on_warning)

    @classmethod
    def with_check_range(cls, url: str, check_range: bool) -> "PartialZip":
        return cls(url, PartialZipOptions(check_range=check_range))

    @property
    def url(self) -> str:
        return self._reader.url

    @property
    def file_size(self) -> int:
        return self._reader.size

    @property
    def index(self) -> ArchiveIndex:
        return self._index

    def list_names(self) -> List[str]:
        return self._index.names()

    def list_detailed(self) -> List[PartialZipFileDetailed]:
        """Names plus attributes, re-reading every local header.

        One extra request per member; members whose header cannot be read
        are logged and left out.
        """
        out: List[PartialZipFileDetailed] = []
        for i, entry in enumerate(self._index):
            if entry.name is None:
                continue
            try:
                header = self._extractor.read_local_header(entry)
            except PartialZipError as e:
                logger.warning("list: error while reading file by index: %d - %s", i, e)
                continue
            method = CompressionMethod.from_code(header.method_code)
            out.append(
                PartialZipFileDetailed(
                    name=entry.name,
                    compressed_size=entry.compressed_size,
                    compression_method=method,
                    supported=method.supported,
                    last_modified=header.last_modified,
                )
            )
        return out

    def download(self, filename: str, progress: Optional[ProgressCallback] = None) -> bytes:
        """Whole member in memory. Prefer download_to_file for big members."""
        buf = io.BytesIO()
        self.download_to_write(filename, buf, progress=progress)
        return buf.getvalue()

    def download_to_write(
        self,
        filename: str,
        writer: BinaryIO,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        return self._extractor.extract(filename, writer, progress=progress)

    def download_to_file(
        self,
        filename: str,
        output_path: PathLike,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        # fail on a missing member before creating the output file
        self._index.find(filename)
        try:
            with open(output_path, "wb") as f:
                return self.download_to_write(filename, f, progress=progress)
        except BaseException:
            # size and CRC are only known at the end; drop the partial file
            with contextlib.suppress(OSError):
                os.remove(output_path)
            raise

    def download_multiple(self, filenames: Sequence[str]) -> List[Tuple[str, bytes]]:
        return [(name, self.download(name)) for name in filenames]

    def download_multiple_to_dir(
        self,
        filenames: Sequence[str],
        output_dir: PathLike,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Stream each member into *output_dir* under its base name; first failure aborts."""
        total = 0
        for name in filenames:
            base = posixpath.basename(name.rstrip("/")) or name
            total += self.download_to_file(name, os.path.join(output_dir, base), progress=progress)
        return total

    def close(self) -> None:
        self._reader.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
