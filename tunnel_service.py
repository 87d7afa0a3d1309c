"""
tunnel_service.py - Share server + tunnel behind one start/stop switch

The app owns exactly one TunnelService and passes it to whoever needs share
links. Callers must not overlap start() and stop() calls; there is no lock
beyond start() being idempotent.

    tunnel = TunnelService.from_settings(Settings.from_env())
    info = tunnel.start()
    url = tunnel.get_file_url("clip.mp4")   # https://xyz.trycloudflare.com/clip.mp4
    tunnel.stop()
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import quote

from share_config import (
    DEFAULT_SHARE_PORT,
    Settings,
    get_configured_recordings_dir,
    get_configured_share_dir,
)
from share_server import ShareServer
from tunnel_process import TunnelProcess, TunnelUnavailable

log = logging.getLogger("tunnel_service")

DirLookup = Callable[[], Optional[Path]]


@dataclass(frozen=True)
class TunnelInfo:
    url: str = ""
    is_active: bool = False
    port: int = DEFAULT_SHARE_PORT

    def to_dict(self) -> dict:
        return asdict(self)


class ShareRootNotConfigured(RuntimeError):
    """Neither a share directory nor a recordings directory is set"""


def resolve_share_root(share_dir: Optional[Path], recordings_dir: Optional[Path]) -> Path:
    """Share directory if set, otherwise the recordings directory"""
    root = share_dir or recordings_dir
    if not root:
        raise ShareRootNotConfigured(
            "No directory configured for sharing (share or recordings directory required)"
        )
    return Path(root)


class TunnelService:
    def __init__(
        self,
        share_dir_lookup: DirLookup = get_configured_share_dir,
        recordings_dir_lookup: DirLookup = get_configured_recordings_dir,
        port: int = DEFAULT_SHARE_PORT,
        host: str = "127.0.0.1",
        tunnel: Optional[TunnelProcess] = None,
        server_factory: Callable[..., ShareServer] = ShareServer,
    ):
        self._share_dir_lookup = share_dir_lookup
        self._recordings_dir_lookup = recordings_dir_lookup
        self._port = port
        self._host = host
        self._server_factory = server_factory
        self._tunnel = tunnel or TunnelProcess()
        self._tunnel.on_exit = self._on_tunnel_exit

        self._server: Optional[ShareServer] = None
        self._url = ""
        self._active = False
        self._subscribers: List[Callable[[TunnelInfo], None]] = []
        self._subscribers_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TunnelService":
        return cls(
            share_dir_lookup=settings.share_dir_path,
            recordings_dir_lookup=settings.recordings_dir_path,
            port=settings.share_port,
            host=settings.share_host,
            tunnel=TunnelProcess(
                binary=settings.cloudflared_path or None,
                timeout_s=settings.tunnel_timeout_s,
            ),
        )

    # =========================
    # Lifecycle
    # =========================

    def start(self) -> TunnelInfo:
        """Start server and tunnel. Returns the current info if already active."""
        info = self.get_info()
        if info.is_active:
            return info
        if self._active or self._server is not None:
            # Half-dead leftovers (e.g. tunnel died while we were starting)
            self.stop()

        root = resolve_share_root(self._share_dir_lookup(), self._recordings_dir_lookup())
        server = self._server_factory(root, port=self._port, host=self._host)
        server.start()
        self._server = server

        try:
            url = self._tunnel.spawn(server.port)
            if not self._tunnel.is_alive:
                raise TunnelUnavailable("cloudflared exited right after reporting its URL")
        except Exception:
            self._server = None
            server.stop()
            raise

        self._url = url
        self._active = True
        log.info(f"Sharing {root} at {url}")

        info = self.get_info()
        self._notify(info)
        return info

    def stop(self) -> None:
        """Kill the tunnel and close the server. No-op when stopped."""
        was_active = self._active

        try:
            self._tunnel.kill()
        except Exception as e:
            log.warning(f"Could not stop cloudflared: {e}")

        server, self._server = self._server, None
        if server is not None:
            server.stop()

        self._url = ""
        self._active = False
        if was_active:
            self._notify(self.get_info())

    def _on_tunnel_exit(self, returncode: int) -> None:
        was_active = self._active
        self._active = False
        self._url = ""

        # Free the port so the next start() can bind again
        server, self._server = self._server, None
        if server is not None:
            server.stop()

        if was_active:
            log.warning(f"Tunnel went down (cloudflared exit code {returncode})")
            self._notify(self.get_info())

    # =========================
    # Queries
    # =========================

    @property
    def port(self) -> int:
        server = self._server
        return server.port if server is not None else self._port

    def get_info(self) -> TunnelInfo:
        server = self._server
        active = (
            self._active
            and bool(self._url)
            and server is not None
            and server.is_running
            and self._tunnel.is_alive
        )
        return TunnelInfo(url=self._url if active else "", is_active=active, port=self.port)

    def get_file_url(self, relative_name: str) -> Optional[str]:
        """Public URL for a path relative to the share root (forward slashes), or None"""
        info = self.get_info()
        if not info.is_active:
            return None
        return f"{info.url}/{quote(relative_name.lstrip('/'), safe='/')}"

    # =========================
    # State change subscriptions
    # =========================

    def subscribe(self, callback: Callable[[TunnelInfo], None]) -> Callable[[], None]:
        """Call `callback(info)` on every active/inactive change. Returns an unsubscribe function."""
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, info: TunnelInfo) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(info)
            except Exception:
                log.exception("Tunnel state callback failed")
