"""
Transports that answer ranged reads against a URL.

The reader only needs three calls:
  • probe_size(url): total byte length, without downloading a body
  • fetch_range(url, start, end): bytes of the inclusive range [start, end]
  • fetch_exact(url, first_byte): 1-byte probe returning (body, partial_status)

http/https go through a requests.Session, file:// through the local
filesystem and ftp:// through ftplib.
"""
import abc
import contextlib
import ftplib
import logging
import os
import re
import socket
from typing import Dict, Iterator, Optional, Tuple
from urllib.parse import quote, unquote, urlparse, urlunparse
from urllib.request import url2pathname

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection
from urllib3.util.retry import Retry

from .errors import InvalidUrl, TransportError
from .options import PartialZipOptions
from .utils import url_is_valid

logger = logging.getLogger(__name__)

HTTP_PARTIAL_CONTENT = 206
HTTP_RANGE_NOT_SATISFIABLE = 416

_CONTENT_RANGE_RE = re.compile(r"bytes\s+\d+-\d+/(\d+)")


class RangeTransport(abc.ABC):
    """Narrow contract between the virtual reader and the network."""

    def __init__(self, options: PartialZipOptions) -> None:
        self.options = options

    @abc.abstractmethod
    def probe_size(self, url: str) -> int:
        """Return the resource length in bytes."""

    @abc.abstractmethod
    def fetch_range(self, url: str, start: int, end: int) -> bytes:
        """Return the bytes of the inclusive range [start, end]."""

    @abc.abstractmethod
    def fetch_exact(self, url: str, first_byte: int) -> Tuple[bytes, bool]:
        """Request the single byte at *first_byte*.

        Returns the body (never more than two bytes are read, enough to tell a
        1-byte answer from a full one) and whether the answer carried a
        partial-content status.
        """

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# http / https

def _keepalive_socket_options(idle: int, interval: int) -> list:
    opts = list(HTTPConnection.default_socket_options)
    opts.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
    # TCP_KEEPIDLE/TCP_KEEPINTVL are missing on some platforms
    if hasattr(socket, "TCP_KEEPIDLE"):
        opts.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, int(idle)))
    if hasattr(socket, "TCP_KEEPINTVL"):
        opts.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, int(interval)))
    return opts


class KeepAliveAdapter(HTTPAdapter):
    """HTTPAdapter whose pools open sockets with TCP keep-alive tuning."""

    def __init__(self, socket_options: list, **kwargs) -> None:
        self._socket_options = socket_options
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["socket_options"] = self._socket_options
        super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["socket_options"] = self._socket_options
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def _proxy_with_credentials(proxy: str, auth: Optional[Tuple[str, str]]) -> str:
    if not auth:
        return proxy
    p = urlparse(proxy)
    host = p.hostname or ""
    if p.port:
        host = f"{host}:{p.port}"
    user, password = auth
    netloc = f"{quote(user, safe='')}:{quote(password, safe='')}@{host}"
    return urlunparse(p._replace(netloc=netloc))


def _range_validator(headers) -> Optional[str]:
    """Validator usable in If-Range: a strong ETag, else Last-Modified.

    If-Range needs a strong match, so a weak ETag (W/"...") would turn every
    ranged GET into a full 200 response.
    """
    etag = headers.get("ETag")
    if etag and not etag.startswith("W/"):
        return etag
    return headers.get("Last-Modified")


@contextlib.contextmanager
def _requests_errors(url: str) -> Iterator[None]:
    try:
        yield
    except requests.TooManyRedirects as e:
        raise TransportError(f"too many redirects for {url}") from e
    except requests.RequestException as e:
        raise TransportError(f"{url}: {e}") from e


class RequestsTransport(RangeTransport):
    """
    requests-backed transport with:
      • connection pooling and keep-alive (one Session per archive)
      • redirect cap via Session.max_redirects
      • basic auth, proxy + proxy credentials
      • If-Range with the ETag/Last-Modified seen by the size probe
      • optional urllib3 retries (off by default)
    """

    def __init__(
        self,
        options: PartialZipOptions,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(options)
        self._external_session = session is not None
        self.s = session or requests.Session()
        adapter = KeepAliveAdapter(
            _keepalive_socket_options(options.tcp_keepidle, options.tcp_keepintvl),
            max_retries=Retry(
                total=options.max_retries,
                connect=options.max_retries,
                read=options.max_retries,
                redirect=False,
                backoff_factor=options.backoff,
                status_forcelist=(500, 502, 503, 504),
                allowed_methods=("HEAD", "GET"),
                raise_on_status=False,
            ),
        )
        self.s.mount("http://", adapter)
        self.s.mount("https://", adapter)
        self.s.max_redirects = options.max_redirects
        self.s.headers["User-Agent"] = options.user_agent
        if options.basic_auth:
            self.s.auth = options.basic_auth
        if options.proxy:
            proxy = _proxy_with_credentials(options.proxy, options.proxy_auth)
            self.s.proxies = {"http": proxy, "https": proxy}
            # explicit proxy wins over *_PROXY environment variables
            self.s.trust_env = False
        self._validators: Dict[str, str] = {}

    def close(self) -> None:
        if not self._external_session:
            self.s.close()

    def _get(self, url: str, headers: dict, stream: bool = False) -> requests.Response:
        # ranges address the stored bytes, not a content-encoded rendition
        return self.s.get(
            url,
            headers={"Accept-Encoding": "identity", **headers},
            timeout=self.options.timeout,
            allow_redirects=True,
            stream=stream,
        )

    def probe_size(self, url: str) -> int:
        with _requests_errors(url):
            h = self.s.head(
                url,
                headers={"Accept-Encoding": "identity"},
                timeout=self.options.timeout,
                allow_redirects=True,
            )
            h.raise_for_status()
            validator = _range_validator(h.headers)
            if validator:
                self._validators[url] = validator
            cl = h.headers.get("Content-Length")
            if cl is not None:
                try:
                    return int(cl)
                except ValueError:
                    logger.debug("ignoring bad Content-Length %r from HEAD", cl)
            # no usable length on HEAD, ask for one byte and read Content-Range
            with contextlib.closing(self._get(url, {"Range": "bytes=0-0"}, stream=True)) as r:
                r.raise_for_status()
                m = _CONTENT_RANGE_RE.match(r.headers.get("Content-Range", ""))
                if r.status_code == HTTP_PARTIAL_CONTENT and m:
                    return int(m.group(1))
                cl = r.headers.get("Content-Length")
                if r.status_code == 200 and cl and cl.isdigit():
                    return int(cl)
        raise TransportError(f"unable to determine remote size of {url}")

    def _headers_for_range(self, url: str, start: int, end: int) -> dict:
        headers = {"Range": f"bytes={start}-{end}"}
        validator = self._validators.get(url)
        if validator:
            headers["If-Range"] = validator
        return headers

    def fetch_range(self, url: str, start: int, end: int) -> bytes:
        want = end - start + 1
        with _requests_errors(url):
            with contextlib.closing(
                self._get(url, self._headers_for_range(url, start, end), stream=True)
            ) as r:
                if r.status_code == HTTP_RANGE_NOT_SATISFIABLE:
                    return b""
                r.raise_for_status()
                if r.status_code == HTTP_PARTIAL_CONTENT:
                    return r.raw.read(want, decode_content=True) or b""
                # full body: skip to start and stop reading once the window is filled
                logger.warning(
                    "server answered range %d-%d of %s with status %d, slicing full body",
                    start, end, url, r.status_code,
                )
                out = bytearray()
                skipped = 0
                for chunk in r.iter_content(chunk_size=64 * 1024):
                    if skipped < start:
                        drop = min(len(chunk), start - skipped)
                        skipped += drop
                        chunk = chunk[drop:]
                    out += chunk[: want - len(out)]
                    if len(out) >= want:
                        break
                return bytes(out)

    def fetch_exact(self, url: str, first_byte: int) -> Tuple[bytes, bool]:
        with _requests_errors(url):
            headers = {"Range": f"bytes={first_byte}-{first_byte}"}
            with contextlib.closing(self._get(url, headers, stream=True)) as r:
                r.raise_for_status()
                body = r.raw.read(2, decode_content=True) or b""
                return body, r.status_code == HTTP_PARTIAL_CONTENT


# file://

def _local_path(url: str) -> str:
    p = urlparse(url)
    if p.netloc not in ("", "localhost"):
        raise InvalidUrl(f"remote host in file URL: {url}")
    return url2pathname(p.path)


class FileTransport(RangeTransport):
    """Local files. There is no partial-content status, so check_range fails here."""

    def probe_size(self, url: str) -> int:
        try:
            return os.path.getsize(_local_path(url))
        except OSError as e:
            raise TransportError(f"{url}: {e}") from e

    def _read(self, url: str, start: int, length: int) -> bytes:
        try:
            with open(_local_path(url), "rb") as f:
                f.seek(start)
                return f.read(length)
        except OSError as e:
            raise TransportError(f"{url}: {e}") from e

    def fetch_range(self, url: str, start: int, end: int) -> bytes:
        return self._read(url, start, end - start + 1)

    def fetch_exact(self, url: str, first_byte: int) -> Tuple[bytes, bool]:
        # a plain file read hands back everything that is left
        return self._read(url, first_byte, 2), False


# ftp://

class FtpTransport(RangeTransport):
    """
    ftplib transport: SIZE for the probe, REST + RETR for ranges.

    One control connection is opened lazily and reused for every request.
    """

    def __init__(self, options: PartialZipOptions) -> None:
        super().__init__(options)
        self._ftp: Optional[ftplib.FTP] = None
        if options.proxy:
            logger.debug("proxy settings are ignored for ftp:// URLs")

    def _connect(self, url: str) -> ftplib.FTP:
        if self._ftp is None:
            p = urlparse(url)
            ftp = ftplib.FTP(timeout=self.options.connect_timeout)
            ftp.connect(p.hostname or "", p.port or 21)
            if self.options.basic_auth:
                ftp.login(*self.options.basic_auth)
            elif p.username:
                ftp.login(unquote(p.username), unquote(p.password or ""))
            else:
                ftp.login()
            ftp.voidcmd("TYPE I")
            self._ftp = ftp
        return self._ftp

    @contextlib.contextmanager
    def _ftp_errors(self, url: str) -> Iterator[None]:
        try:
            yield
        except (ftplib.Error, OSError, EOFError) as e:
            self.close()
            raise TransportError(f"{url}: {e}") from e

    @staticmethod
    def _path(url: str) -> str:
        return unquote(urlparse(url).path)

    def probe_size(self, url: str) -> int:
        with self._ftp_errors(url):
            size = self._connect(url).size(self._path(url))
        if size is None:
            raise TransportError(f"unable to determine remote size of {url}")
        return int(size)

    def _retr(self, url: str, start: int, length: int) -> bytes:
        ftp = self._connect(url)
        out = bytearray()
        with contextlib.closing(ftp.transfercmd(f"RETR {self._path(url)}", rest=start)) as conn:
            while len(out) < length:
                chunk = conn.recv(min(64 * 1024, length - len(out)))
                if not chunk:
                    break
                out += chunk
        try:
            ftp.voidresp()
        except (ftplib.error_temp, ftplib.error_perm) as e:
            # 426/451 once the data connection is hung up early
            logger.debug("ftp transfer ended with %s", e)
        return bytes(out)

    def fetch_range(self, url: str, start: int, end: int) -> bytes:
        with self._ftp_errors(url):
            return self._retr(url, start, end - start + 1)

    def fetch_exact(self, url: str, first_byte: int) -> Tuple[bytes, bool]:
        with self._ftp_errors(url):
            return self._retr(url, first_byte, 2), False

    def close(self) -> None:
        ftp, self._ftp = self._ftp, None
        if ftp is not None:
            try:
                ftp.quit()
            except (ftplib.Error, OSError, EOFError):
                ftp.close()


def transport_for(url: str, options: PartialZipOptions) -> RangeTransport:
    """Pick the transport for *url*'s scheme; rejects unsupported URLs."""
    if not url_is_valid(url):
        raise InvalidUrl(url)
    scheme = urlparse(url).scheme
    if scheme in ("http", "https"):
        return RequestsTransport(options)
    if scheme == "ftp":
        return FtpTransport(options)
    return FileTransport(options)
