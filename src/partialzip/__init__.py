"""List and extract single members of remote zip archives through byte ranges."""
__version__ = "5.0.0"

from .archive import ArchiveIndex, MemberEntry, MemberExtractor
from .codecs import CompressionMethod
from .errors import (
    ChecksumMismatch,
    CodecError,
    EncryptedMember,
    FileNotFound,
    InvalidSeek,
    InvalidUrl,
    MalformedArchive,
    OffsetOverflowError,
    PartialZipError,
    RangeNotSupported,
    TransportError,
    UnsupportedCompression,
)
from .options import PartialZipOptions
from .partzip import PartialZip, PartialZipFileDetailed
from .reader import PartialReader
from .transport import FileTransport, FtpTransport, RangeTransport, RequestsTransport
from .utils import url_is_valid

__all__ = [
    "ArchiveIndex",
    "ChecksumMismatch",
    "CodecError",
    "CompressionMethod",
    "EncryptedMember",
    "FileNotFound",
    "FileTransport",
    "FtpTransport",
    "InvalidSeek",
    "InvalidUrl",
    "MalformedArchive",
    "MemberEntry",
    "MemberExtractor",
    "OffsetOverflowError",
    "PartialReader",
    "PartialZip",
    "PartialZipError",
    "PartialZipFileDetailed",
    "PartialZipOptions",
    "RangeNotSupported",
    "RangeTransport",
    "RequestsTransport",
    "TransportError",
    "UnsupportedCompression",
    "url_is_valid",
]
