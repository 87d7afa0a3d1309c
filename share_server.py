#!/usr/bin/env python3
"""
share_server.py - Local HTTP server for shared clips

Serves files from one share root (the share folder, or the recordings folder
as fallback) so a tunnel can expose them. Anyone with a link can fetch the
file. There is no auth; links are unguessable tunnel URLs.

Usage:
    python share_server.py --root ./shares --port 8765

Features:
    - Range requests (video scrubbing in browsers)
    - Path traversal / symlink escape protection on every request
    - Static pages for the landing page and errors
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, StreamingResponse
import uvicorn

from share_config import DEFAULT_SHARE_PORT

# =========================
# Configuration
# =========================

CHUNK_SIZE = 1024 * 1024  # 1MB chunks for streaming

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

log = logging.getLogger("share_server")


# =========================
# Pages
# =========================

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
  <style>
    body {{
      margin: 0;
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Ubuntu, sans-serif;
      background: linear-gradient(135deg, #1a1a1a 0%, #2d2d2d 100%);
      color: #f5f5f5;
      display: flex;
      align-items: center;
      justify-content: center;
      min-height: 100vh;
    }}
    .container {{ text-align: center; padding: 40px; max-width: 500px; }}
    h1 {{ font-size: 72px; margin: 0 0 20px 0; color: {accent}; }}
    h2 {{ font-size: 24px; margin: 0 0 16px 0; font-weight: 600; }}
    p {{ font-size: 16px; color: #888; line-height: 1.6; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>{icon}</h1>
    <h2>{heading}</h2>
    <p>{message}</p>
  </div>
</body>
</html>
"""


def _page(title: str, icon: str, accent: str, heading: str, message: str) -> str:
    return _PAGE_TEMPLATE.format(title=title, icon=icon, accent=accent, heading=heading, message=message)


INDEX_PAGE = _page(
    "Clip Share", "&#128206;", "#f4c430", "Wrong or Outdated Link",
    "This link doesn't point to a valid file. Please check the URL or request a new share link.",
)
FORBIDDEN_PAGE = _page(
    "Access Denied", "&#128683;", "#ef4444", "Access Denied",
    "You don't have permission to access this resource.",
)
NOT_FOUND_PAGE = _page(
    "File Not Found", "&#128206;", "#f4c430", "Wrong or Outdated Link",
    "This file no longer exists or the link has expired. Please request a new share link.",
)
ERROR_PAGE = _page(
    "Error", "&#9888;", "#ef4444", "Something Went Wrong",
    "An error occurred while processing your request. Please try again later.",
)


# =========================
# Helpers
# =========================

def _is_under_root(p: Path, root: Path) -> bool:
    # resolved paths only, so ../ and symlinks are already expanded
    try:
        p.relative_to(root)
        return True
    except ValueError:
        return False


def resolve_inside_root(root: Path, rel_path: str) -> Optional[Path]:
    """
    Canonicalize `rel_path` against `root`.

    Returns None when the result escapes the root (../, absolute paths,
    symlinks pointing outside) or cannot be resolved at all.
    """
    try:
        candidate = (root / rel_path).resolve()
    except (OSError, ValueError, RuntimeError):
        return None
    if not _is_under_root(candidate, root):
        return None
    return candidate


def content_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def parse_range_header(range_header: str, file_size: int) -> Tuple[int, int]:
    """
    Parse "bytes=start-end" into an inclusive (start, end) pair.

    "bytes=start-" runs to EOF, "bytes=-N" is the last N bytes, and an end
    past EOF is clamped.
    """
    unit, _, range_spec = range_header.partition("=")
    if unit.strip().lower() != "bytes" or "-" not in range_spec or "," in range_spec:
        raise HTTPException(status_code=400, detail="Invalid Range header")

    first, _, last = range_spec.strip().partition("-")
    try:
        if first.strip():
            start = int(first)
            end = int(last) if last.strip() else file_size - 1
        else:
            suffix = int(last)
            start = max(0, file_size - suffix) if suffix > 0 else file_size
            end = file_size - 1
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Range header")

    end = min(end, file_size - 1)
    if start >= file_size or start > end:
        raise HTTPException(
            status_code=416,
            detail="Range not satisfiable",
            headers={"Content-Range": f"bytes */{file_size}"},
        )
    return start, end


def _iter_file(path: Path, start: int, end: int):
    with open(path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def _serve(root: Path, rel_path: str, range_header: Optional[str]):
    if not rel_path.strip("/"):
        return HTMLResponse(INDEX_PAGE)

    path = resolve_inside_root(root, rel_path)
    if path is None:
        log.warning(f"Blocked request outside share root: {rel_path!r}")
        return HTMLResponse(FORBIDDEN_PAGE, status_code=403)

    if not path.is_file():
        return HTMLResponse(NOT_FOUND_PAGE, status_code=404)

    file_size = path.stat().st_size
    media_type = content_type_for(path)

    if range_header:
        start, end = parse_range_header(range_header, file_size)
        return StreamingResponse(
            _iter_file(path, start, end),
            status_code=206,
            media_type=media_type,
            headers={
                "Content-Range": f"bytes {start}-{end}/{file_size}",
                "Content-Length": str(end - start + 1),
                "Accept-Ranges": "bytes",
            },
        )

    return FileResponse(
        path,
        media_type=media_type,
        headers={
            "Accept-Ranges": "bytes",
            "Content-Length": str(file_size),
        },
    )


# =========================
# App
# =========================

def create_app(root: Path) -> FastAPI:
    """Build the share app for one root. The root is fixed for the app's lifetime."""
    root = Path(root).resolve()
    # No docs routes: every path is a potential file name
    app = FastAPI(title="Clip Share Server", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.share_root = root

    @app.api_route("/", methods=["GET", "HEAD"])
    def index():
        return HTMLResponse(INDEX_PAGE)

    @app.api_route("/{rel_path:path}", methods=["GET", "HEAD"])
    def serve_file(rel_path: str, request: Request):
        try:
            return _serve(root, rel_path, request.headers.get("range"))
        except HTTPException:
            raise
        except Exception:
            log.exception(f"Failed to serve {rel_path!r}")
            return HTMLResponse(ERROR_PAGE, status_code=500)

    return app


# =========================
# Server lifecycle
# =========================

class ShareServerError(RuntimeError):
    """uvicorn did not come up"""


class ShareServer:
    """Runs the share app under uvicorn on a background thread"""

    def __init__(self, root: Path, port: int = DEFAULT_SHARE_PORT, host: str = "127.0.0.1"):
        self.root = Path(root).resolve()
        self.host = host
        self._requested_port = port
        self._port = port
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_running(self) -> bool:
        return (
            self._server is not None
            and self._server.started
            and self._thread is not None
            and self._thread.is_alive()
        )

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self._requested_port))
        except OSError:
            sock.close()
            raise
        return sock

    def start(self, timeout_s: float = 10.0) -> None:
        """Bind and serve. Raises OSError if the port is taken, ShareServerError if uvicorn never starts."""
        if self.is_running:
            return

        # Bind here so a port conflict surfaces in the caller, not in the thread
        sock = self._bind()
        self._port = sock.getsockname()[1]

        config = uvicorn.Config(
            create_app(self.root),
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=5,
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [sock]},
            name="share-server",
            daemon=True,
        )
        self._server = server
        self._thread = thread
        thread.start()

        t0 = time.time()
        while not server.started:
            if not thread.is_alive() or time.time() - t0 > timeout_s:
                server.should_exit = True
                thread.join(timeout=5)
                sock.close()
                self._server = None
                self._thread = None
                raise ShareServerError(f"Share server failed to start on {self.host}:{self._port}")
            time.sleep(0.05)

        log.info(f"Serving {self.root} on http://{self.host}:{self._port}")

    def stop(self) -> None:
        """Ask uvicorn to exit and wait for it to close its connections"""
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        server.should_exit = True
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        log.info("Share server stopped")


# =========================
# CLI
# =========================

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ap = argparse.ArgumentParser(description="Serve a folder of clips over HTTP")
    ap.add_argument("--root", type=Path, required=True, help="Folder to serve")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=DEFAULT_SHARE_PORT)
    args = ap.parse_args()

    root = args.root.expanduser().resolve()
    if not root.is_dir():
        raise SystemExit(f"Not a directory: {root}")

    log.info(f"Serving clips from: {root}")
    uvicorn.run(create_app(root), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
