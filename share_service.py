"""
share_service.py - Turn a local clip into a link

Two destinations:
    tunnel      copy into SHARE_DIR (or serve in place from RECORDINGS_DIR)
                and hand out a trycloudflare.com link
    streamable  upload to Streamable and hand out its link

Transcoding before sharing is done elsewhere; this module shares the file
it is given.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Optional

from safe_file_ops import safe_copy_file
from share_config import Settings
from streamable_client import StreamableClient, UploadError, UploadProgress, share_url
from tunnel_service import TunnelService

log = logging.getLogger("share_service")

DESTINATIONS = ("tunnel", "streamable")


@dataclass
class ShareRequest:
    path: str
    destination: str = "tunnel"


@dataclass
class ShareResult:
    success: bool
    share_url: Optional[str] = None
    share_path: Optional[str] = None
    already_shared: bool = False
    size_mb: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _size_mb(path: Path) -> float:
    return round(path.stat().st_size / (1024 * 1024), 1)


def _tunnel_url(tunnel: TunnelService, url_name: str, share_path: Path, already_shared: bool) -> ShareResult:
    try:
        tunnel.start()
    except Exception as e:
        log.error(f"Failed to start tunnel: {e}")
        return ShareResult(success=False, error=f"Failed to start server: {e}")

    file_url = tunnel.get_file_url(url_name)
    if not file_url:
        return ShareResult(success=False, error="Failed to get share URL")

    return ShareResult(
        success=True,
        share_url=file_url,
        share_path=str(share_path),
        already_shared=already_shared,
        size_mb=_size_mb(share_path),
    )


def share_via_tunnel(source: Path, settings: Settings, tunnel: TunnelService) -> ShareResult:
    share_dir = settings.share_dir_path()

    if share_dir is None:
        # Served in place: the URL is the path below the recordings folder
        recordings_dir = settings.recordings_dir_path()
        if recordings_dir is None:
            return ShareResult(success=False, error="No share or recordings directory configured")
        try:
            rel = source.resolve().relative_to(recordings_dir)
        except ValueError:
            return ShareResult(success=False, error="File is outside the recordings directory")
        return _tunnel_url(tunnel, rel.as_posix(), source, already_shared=False)

    try:
        share_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return ShareResult(success=False, error=f"Failed to create share directory: {e}")

    share_path = share_dir / source.name
    if share_path.resolve() == source.resolve():
        return _tunnel_url(tunnel, source.name, share_path, already_shared=False)

    if share_path.exists():
        log.info(f"Already shared: {share_path}")
        return _tunnel_url(tunnel, source.name, share_path, already_shared=True)

    try:
        safe_copy_file(source, share_path)
    except OSError as e:
        return ShareResult(success=False, error=f"Failed to copy file: {e}")

    return _tunnel_url(tunnel, source.name, share_path, already_shared=False)


def share_via_streamable(
    source: Path,
    settings: Settings,
    uploader: Optional[StreamableClient] = None,
    on_progress: Optional[Callable[[UploadProgress], None]] = None,
) -> ShareResult:
    if not settings.has_streamable_credentials():
        return ShareResult(success=False, error="Streamable username and password are not configured")

    uploader = uploader or StreamableClient(
        api_url=settings.streamable_api_url,
        chunk_size=settings.upload_chunk_size,
    )
    try:
        shortcode = uploader.upload(
            source,
            settings.streamable_username,
            settings.streamable_password,
            on_progress=on_progress,
        )
    except UploadError as e:
        log.warning(f"Streamable upload failed ({e.kind.value}): {e}")
        return ShareResult(success=False, error=str(e))

    return ShareResult(
        success=True,
        share_url=share_url(shortcode),
        share_path=str(source),
        size_mb=_size_mb(source),
    )


def share_media(
    request: ShareRequest,
    settings: Settings,
    tunnel: TunnelService,
    uploader: Optional[StreamableClient] = None,
    on_progress: Optional[Callable[[UploadProgress], None]] = None,
) -> ShareResult:
    """Share one file. Never raises for expected failures; see ShareResult.error."""
    source = Path(request.path)
    if not source.is_file():
        return ShareResult(success=False, error="File not found")

    if request.destination == "streamable":
        return share_via_streamable(source, settings, uploader, on_progress)
    if request.destination == "tunnel":
        return share_via_tunnel(source, settings, tunnel)
    return ShareResult(success=False, error=f"Unknown share destination: {request.destination}")
