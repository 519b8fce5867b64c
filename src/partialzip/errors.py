class PartialZipError(Exception):
    """Base class for every failure raised by partialzip."""

    message = "partialzip error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)


class InvalidUrl(PartialZipError):
    message = "Invalid URL"


class FileNotFound(PartialZipError):
    message = "File Not Found"

    def __init__(self, name: str = "") -> None:
        self.name = name
        super().__init__(name)


class RangeNotSupported(PartialZipError):
    message = "Range request not supported"


class UnsupportedCompression(PartialZipError):
    message = "Unsupported Compression"

    def __init__(self, method: int) -> None:
        self.method = method
        self.detail = str(method)
        Exception.__init__(self, f"{method} is a Unsupported Compression")


class EncryptedMember(PartialZipError):
    message = "Encrypted members are not supported"


class MalformedArchive(PartialZipError):
    message = "Invalid zip archive"


class TransportError(PartialZipError):
    message = "Transport error"


class OffsetOverflowError(PartialZipError, ArithmeticError):
    message = "Offset arithmetic overflow"


class InvalidSeek(PartialZipError, OSError, ValueError):
    message = "invalid seek to a negative or overflowing position"


class CodecError(PartialZipError):
    message = "Decompression failed"


class ChecksumMismatch(CodecError):
    message = "Bad CRC-32"
