"""Small helpers: URL validation, u64-checked offset arithmetic, size formatting."""
from urllib.parse import urlparse

from .errors import MalformedArchive, OffsetOverflowError

SUPPORTED_SCHEMES = ("http", "https", "ftp", "file")

U64_MAX = (1 << 64) - 1


def url_is_valid(url: str) -> bool:
    """Return True if *url* parses and uses one of the supported schemes."""
    if not isinstance(url, str) or not url or any(c.isspace() for c in url):
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in SUPPORTED_SCHEMES:
        return False
    # "js:" style opaque URLs have a scheme but nothing to fetch
    return bool(parsed.netloc or parsed.path)


def _check_u64(value: int, what: str) -> int:
    if value < 0 or value > U64_MAX:
        raise OffsetOverflowError(f"{what} out of u64 range: {value}")
    return value


def checked_add(a: int, b: int) -> int:
    return _check_u64(a + b, f"{a} + {b}")


def checked_sub(a: int, b: int) -> int:
    return _check_u64(a - b, f"{a} - {b}")


def checked_range(start: int, length: int, total_size: int):
    """Inclusive ``(start, end)`` of *length* bytes at *start*, inside the resource.

    Raises OffsetOverflowError when the window is empty or leaves the u64
    range, MalformedArchive when it does not fit in ``[0, total_size)``.
    """
    if length <= 0:
        raise OffsetOverflowError(f"empty range of {length} bytes at {start}")
    end = checked_sub(checked_add(start, length), 1)
    if end < start:
        raise OffsetOverflowError(f"end < start: {end} < {start}")
    if end >= total_size:
        raise MalformedArchive(
            f"range {start}-{end} outside resource of {total_size} bytes"
        )
    return start, end


def format_size(num_bytes: int) -> str:
    if num_bytes < 1000:
        return f"{num_bytes} B"
    value = float(num_bytes)
    for unit in ("KB", "MB", "GB", "TB", "PB"):
        value /= 1000
        if value < 1000:
            break
    return f"{value:.1f} {unit}"
