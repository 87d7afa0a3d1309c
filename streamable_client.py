#!/usr/bin/env python3
"""
streamable_client.py - Upload clips to Streamable

Streams the file inside a hand-built multipart body so memory stays flat for
multi-GB recordings. The upload endpoint needs a Content-Length (no chunked
transfer encoding), so the body length is computed upfront.

Usage:
    STREAMABLE_USERNAME=me STREAMABLE_PASSWORD=secret python streamable_client.py clip.mp4

Errors come back as UploadError with a `kind` the UI can show directly.
"""

from __future__ import annotations

import argparse
import enum
import logging
import os
import secrets
import socket
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from share_config import DEFAULT_STREAMABLE_API_URL, DEFAULT_UPLOAD_CHUNK_SIZE

log = logging.getLogger("streamable_client")

PathLike = Union[str, Path]

STREAMABLE_VIDEO_URL = "https://streamable.com/{shortcode}"
CONNECT_TIMEOUT_S = 30
IO_TIMEOUT_S = 300


# =========================
# Results / errors
# =========================

@dataclass(frozen=True)
class UploadProgress:
    percent: int
    bytes_sent: int
    total_bytes: int


class UploadErrorKind(enum.Enum):
    AUTH_FAILED = "auth_failed"
    ACCESS_DENIED = "access_denied"
    ACCOUNT_NOT_FOUND = "account_not_found"
    FILE_TOO_LARGE = "file_too_large"
    SERVER_UNAVAILABLE = "server_unavailable"
    HTTP_ERROR = "http_error"
    UNEXPECTED_RESPONSE = "unexpected_response"
    HOST_UNREACHABLE = "host_unreachable"
    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    NETWORK = "network"
    SOURCE_READ = "source_read"
    ABORTED = "aborted"


ERROR_MESSAGES = {
    UploadErrorKind.AUTH_FAILED: "Invalid username or password. Check your Streamable credentials.",
    UploadErrorKind.ACCESS_DENIED: "Access denied. Your Streamable account may be restricted or the credentials are incorrect.",
    UploadErrorKind.ACCOUNT_NOT_FOUND: "Streamable account not found. Check your username.",
    UploadErrorKind.FILE_TOO_LARGE: "File too large for Streamable. Free accounts are limited to 250 MB.",
    UploadErrorKind.SERVER_UNAVAILABLE: "Streamable servers are currently unavailable. Please try again later.",
    UploadErrorKind.HTTP_ERROR: "Streamable upload failed.",
    UploadErrorKind.UNEXPECTED_RESPONSE: "Streamable returned an unexpected response.",
    UploadErrorKind.HOST_UNREACHABLE: "Cannot reach Streamable. Check your internet connection.",
    UploadErrorKind.TIMEOUT: "Connection to Streamable timed out. Please try again.",
    UploadErrorKind.CONNECTION_RESET: "The connection to Streamable was interrupted. Please try again.",
    UploadErrorKind.NETWORK: "Upload failed because of a network error.",
    UploadErrorKind.SOURCE_READ: "Failed to read the file being uploaded.",
    UploadErrorKind.ABORTED: "Upload cancelled.",
}

STATUS_ERRORS = {
    401: UploadErrorKind.AUTH_FAILED,
    403: UploadErrorKind.ACCESS_DENIED,
    404: UploadErrorKind.ACCOUNT_NOT_FOUND,
    413: UploadErrorKind.FILE_TOO_LARGE,
}


class UploadError(Exception):
    def __init__(self, kind: UploadErrorKind, message: Optional[str] = None, status_code: Optional[int] = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message or ERROR_MESSAGES[kind])


# =========================
# Multipart body
# =========================

def _quote_filename(name: str) -> str:
    return name.replace("\r", "%0D").replace("\n", "%0A").replace('"', "%22")


class MultipartBody:
    """
    multipart/form-data body with a single file field, read lazily.

    The transport pulls chunks by iterating. The next chunk is only read
    once the previous one has been written to the (blocking) socket, so a
    slow connection throttles disk reads instead of buffering the file.
    Progress for a chunk is reported when the transport comes back for more.
    """

    def __init__(
        self,
        file_path: PathLike,
        field_name: str = "file",
        chunk_size: int = DEFAULT_UPLOAD_CHUNK_SIZE,
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
        boundary: Optional[str] = None,
    ):
        self.file_path = Path(file_path)
        self.file_size = self.file_path.stat().st_size
        self.chunk_size = chunk_size
        self.on_progress = on_progress
        self.boundary = boundary or f"----ClipShareBoundary{secrets.token_hex(16)}"

        self.prefix = (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{field_name}"; filename="{_quote_filename(self.file_path.name)}"\r\n'
            f"Content-Type: application/octet-stream\r\n\r\n"
        ).encode("utf-8")
        self.suffix = f"\r\n--{self.boundary}--\r\n".encode("utf-8")
        self.total_size = len(self.prefix) + self.file_size + len(self.suffix)

        self.bytes_sent = 0
        self.read_error: Optional[BaseException] = None
        self.aborted = False
        self._file = None

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self) -> int:
        return self.total_size

    def __iter__(self) -> Iterator[bytes]:
        pending = 0
        for piece in self._pieces():
            self._advance(pending)
            pending = len(piece)
            yield piece
        self._advance(pending)

    def abort(self) -> None:
        """Make the in-flight request fail at its next chunk"""
        self.aborted = True
        f = self._file
        if f is not None:
            f.close()

    def _advance(self, n: int) -> None:
        if not n:
            return
        self.bytes_sent += n
        if self.on_progress is not None:
            self.on_progress(UploadProgress(
                percent=min(100, round(self.bytes_sent * 100 / self.total_size)),
                bytes_sent=self.bytes_sent,
                total_bytes=self.total_size,
            ))

    def _read_failed(self, e: BaseException) -> UploadError:
        self.read_error = e
        return UploadError(UploadErrorKind.SOURCE_READ, f"Failed to read file: {e}")

    def _pieces(self) -> Iterator[bytes]:
        # UploadError must not be an OSError: urllib3 would wrap an
        # OSError into a connection error and hide that the source failed.
        yield self.prefix

        try:
            f = open(self.file_path, "rb")
        except OSError as e:
            raise self._read_failed(e) from e
        self._file = f

        with f:
            remaining = self.file_size
            while remaining > 0:
                if self.aborted:
                    raise UploadError(UploadErrorKind.ABORTED)
                try:
                    chunk = f.read(min(self.chunk_size, remaining))
                except (OSError, ValueError) as e:
                    if self.aborted:
                        raise UploadError(UploadErrorKind.ABORTED) from e
                    raise self._read_failed(e) from e
                if not chunk:
                    raise self._read_failed(EOFError(f"file shrank by {remaining} bytes during upload"))
                remaining -= len(chunk)
                yield chunk

        if self.aborted:
            raise UploadError(UploadErrorKind.ABORTED)
        yield self.suffix


# =========================
# Classification
# =========================

def _iter_causes(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    stack = [exc]
    while stack:
        e = stack.pop()
        if not isinstance(e, BaseException) or id(e) in seen:
            continue
        seen.add(id(e))
        yield e
        stack.extend([e.__cause__, e.__context__, getattr(e, "reason", None)])
        stack.extend(a for a in e.args if isinstance(a, BaseException))


_DNS_MARKERS = ("getaddrinfo", "Name or service not known", "Failed to resolve", "nodename nor servname")


def classify_request_error(exc: requests.RequestException) -> UploadError:
    """Map a requests transport error to an UploadError"""
    causes = list(_iter_causes(exc))
    text = str(exc)

    if isinstance(exc, requests.Timeout) or any(isinstance(c, socket.timeout) for c in causes):
        return UploadError(UploadErrorKind.TIMEOUT)
    if any(isinstance(c, socket.gaierror) for c in causes) or any(m in text for m in _DNS_MARKERS):
        return UploadError(UploadErrorKind.HOST_UNREACHABLE)
    if any(isinstance(c, ConnectionRefusedError) for c in causes):
        return UploadError(UploadErrorKind.HOST_UNREACHABLE)
    if any(isinstance(c, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)) for c in causes):
        return UploadError(UploadErrorKind.CONNECTION_RESET)
    return UploadError(UploadErrorKind.NETWORK, f"Upload failed: {exc}")


def parse_upload_response(r: requests.Response) -> str:
    """Return the shortcode from a Streamable upload response or raise UploadError"""
    status = r.status_code
    if status in (200, 201):
        try:
            data = r.json()
        except ValueError:
            raise UploadError(UploadErrorKind.UNEXPECTED_RESPONSE, "Invalid response from Streamable", status)
        shortcode = data.get("shortcode") if isinstance(data, dict) else None
        if not isinstance(shortcode, str) or not shortcode:
            raise UploadError(
                UploadErrorKind.UNEXPECTED_RESPONSE,
                "Streamable returned an unexpected response (no shortcode)",
                status,
            )
        return shortcode

    kind = STATUS_ERRORS.get(status)
    if kind is None:
        kind = UploadErrorKind.SERVER_UNAVAILABLE if status >= 500 else UploadErrorKind.HTTP_ERROR
    message = f"Streamable upload failed (HTTP {status})" if kind is UploadErrorKind.HTTP_ERROR else None
    raise UploadError(kind, message, status)


# =========================
# Transport
# =========================

class AbortableAdapter(HTTPAdapter):
    """
    HTTPAdapter that keeps track of the sockets its pools open.

    Closing the source file does not wake a sendall() stuck on a stalled
    connection. abort_connections() shuts the sockets down, which fails the
    in-flight write at once.
    """

    def __init__(self, *args, **kwargs):
        self._sockets: List[socket.socket] = []
        self._sockets_lock = threading.Lock()
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        track = self._track

        class TrackedHTTPConnection(HTTPConnection):
            def connect(self):
                super().connect()
                track(self.sock)

        class TrackedHTTPSConnection(HTTPSConnection):
            def connect(self):
                super().connect()
                track(self.sock)

        class TrackedHTTPConnectionPool(HTTPConnectionPool):
            ConnectionCls = TrackedHTTPConnection

        class TrackedHTTPSConnectionPool(HTTPSConnectionPool):
            ConnectionCls = TrackedHTTPSConnection

        self.poolmanager.pool_classes_by_scheme = {
            "http": TrackedHTTPConnectionPool,
            "https": TrackedHTTPSConnectionPool,
        }

    def _track(self, sock: Optional[socket.socket]) -> None:
        if sock is None:
            return
        with self._sockets_lock:
            self._sockets = [s for s in self._sockets if s.fileno() != -1]
            self._sockets.append(sock)

    def abort_connections(self) -> None:
        """Shut down every socket this adapter opened"""
        with self._sockets_lock:
            sockets, self._sockets = self._sockets, []
        for sock in sockets:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already closed


# =========================
# Client
# =========================

class StreamableClient:
    """Uploads one file at a time to the Streamable API"""

    def __init__(
        self,
        api_url: str = DEFAULT_STREAMABLE_API_URL,
        chunk_size: int = DEFAULT_UPLOAD_CHUNK_SIZE,
        timeout: tuple = (CONNECT_TIMEOUT_S, IO_TIMEOUT_S),
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.session = session or requests.Session()
        self.adapter = AbortableAdapter()
        self.session.mount("http://", self.adapter)
        self.session.mount("https://", self.adapter)
        self._active_body: Optional[MultipartBody] = None

    def upload(
        self,
        file_path: PathLike,
        username: str,
        password: str,
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
    ) -> str:
        """Upload `file_path`, returning the Streamable shortcode"""
        try:
            body = MultipartBody(file_path, chunk_size=self.chunk_size, on_progress=on_progress)
        except OSError as e:
            raise UploadError(UploadErrorKind.SOURCE_READ, f"Failed to read file: {e}") from e

        log.info(f"Uploading {body.file_path.name} ({body.file_size / (1024 * 1024):.1f} MB) to {self.api_url}")
        self._active_body = body
        try:
            r = self.session.post(
                self.api_url,
                data=body,
                headers={"Content-Type": body.content_type},
                auth=(username, password),
                timeout=self.timeout,
            )
        except UploadError:
            raise
        except requests.RequestException as e:
            if body.aborted:
                raise UploadError(UploadErrorKind.ABORTED) from e
            if body.read_error is not None:
                raise UploadError(UploadErrorKind.SOURCE_READ, f"Failed to read file: {body.read_error}") from e
            raise classify_request_error(e) from e
        finally:
            self._active_body = None

        if body.aborted:
            raise UploadError(UploadErrorKind.ABORTED)
        shortcode = parse_upload_response(r)
        log.info(f"Uploaded {body.file_path.name}: {share_url(shortcode)}")
        return shortcode

    def abort(self) -> None:
        """Cancel the upload in progress (if any) from another thread"""
        body = self._active_body
        if body is not None:
            body.abort()
            self.adapter.abort_connections()

    def close(self) -> None:
        self.session.close()


def share_url(shortcode: str) -> str:
    return STREAMABLE_VIDEO_URL.format(shortcode=shortcode)


# =========================
# CLI
# =========================

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ap = argparse.ArgumentParser(description="Upload a clip to Streamable")
    ap.add_argument("file", type=Path)
    ap.add_argument("--username", default=os.environ.get("STREAMABLE_USERNAME", ""))
    ap.add_argument("--password", default=os.environ.get("STREAMABLE_PASSWORD", ""))
    ap.add_argument("--api-url", default=os.environ.get("STREAMABLE_API_URL", DEFAULT_STREAMABLE_API_URL))
    args = ap.parse_args()

    def show(p: UploadProgress) -> None:
        print(f"\r  Progress: {p.percent}% ({p.bytes_sent // (1024 * 1024)} MB)", end="", flush=True)

    client = StreamableClient(api_url=args.api_url)
    try:
        shortcode = client.upload(args.file, args.username, args.password, on_progress=show)
    except UploadError as e:
        print()
        print(f"ERROR ({e.kind.value}): {e}")
        sys.exit(1)
    print()
    print(f"Uploaded: {share_url(shortcode)}")


if __name__ == "__main__":
    main()
