import dataclasses
from dataclasses import dataclass
from typing import Optional, Tuple

from . import __version__

DEFAULT_MAX_REDIRECTS = 10
DEFAULT_CONNECT_TIMEOUT_SECS = 30.0
DEFAULT_TCP_KEEPIDLE_SECS = 120
DEFAULT_TCP_KEEPINTVL_SECS = 60
DEFAULT_CHUNK_SIZE = 1024 * 1024

Credentials = Tuple[str, str]


@dataclass(frozen=True)
class PartialZipOptions:
    """
    Immutable settings shared by the transport, the reader and the archive.

      • check_range: require a 206 answer to a 1-byte probe before opening
      • max_redirects: redirect cap (0 refuses any redirect)
      • connect_timeout / read_timeout: seconds per request, None = no limit
      • tcp_keepidle / tcp_keepintvl: TCP keep-alive tuning in seconds
      • basic_auth, proxy, proxy_auth: credentials and proxy URL
      • max_retries / backoff: urllib3 retry policy of the HTTP adapter
      • chunk_size: bounded payload chunk used while streaming a member

    The ``with_*`` helpers return modified copies.
    """

    check_range: bool = False
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT_SECS
    read_timeout: Optional[float] = None
    tcp_keepidle: int = DEFAULT_TCP_KEEPIDLE_SECS
    tcp_keepintvl: int = DEFAULT_TCP_KEEPINTVL_SECS
    basic_auth: Optional[Credentials] = None
    proxy: Optional[str] = None
    proxy_auth: Optional[Credentials] = None
    max_retries: int = 0
    backoff: float = 0.5
    user_agent: str = f"partialzip/{__version__}"
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.max_redirects < 0:
            raise ValueError("max_redirects must be >= 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.tcp_keepidle <= 0 or self.tcp_keepintvl <= 0:
            raise ValueError("keep-alive intervals must be > 0")
        for timeout in (self.connect_timeout, self.read_timeout):
            if timeout is not None and timeout <= 0:
                raise ValueError("timeouts must be > 0 or None")

    @property
    def timeout(self) -> Tuple[Optional[float], Optional[float]]:
        """(connect, read) pair in the form requests expects."""
        return (self.connect_timeout, self.read_timeout)

    def with_check_range(self, check: bool) -> "PartialZipOptions":
        return dataclasses.replace(self, check_range=check)

    def with_max_redirects(self, max_redirects: int) -> "PartialZipOptions":
        return dataclasses.replace(self, max_redirects=max_redirects)

    def with_connect_timeout(self, timeout: Optional[float]) -> "PartialZipOptions":
        return dataclasses.replace(self, connect_timeout=timeout)

    def with_tcp_keepidle(self, seconds: int) -> "PartialZipOptions":
        return dataclasses.replace(self, tcp_keepidle=seconds)

    def with_tcp_keepintvl(self, seconds: int) -> "PartialZipOptions":
        return dataclasses.replace(self, tcp_keepintvl=seconds)

    def with_basic_auth(self, username: str, password: str) -> "PartialZipOptions":
        return dataclasses.replace(self, basic_auth=(username, password))

    def with_proxy(self, url: str) -> "PartialZipOptions":
        return dataclasses.replace(self, proxy=url)

    def with_proxy_auth(self, username: str, password: str) -> "PartialZipOptions":
        return dataclasses.replace(self, proxy_auth=(username, password))
