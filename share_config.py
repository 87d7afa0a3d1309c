"""
share_config.py - Environment-based configuration

Settings come from the environment (a .env file is loaded by launch.py).
Persisting settings is the desktop app's job; this module only reads them.

    SHARE_DIR             Folder that shared copies go to (optional)
    RECORDINGS_DIR        Recordings folder, served when SHARE_DIR is unset
    SHARE_HOST            Interface the local server binds (127.0.0.1)
    SHARE_PORT            Local server port (8765)
    CLOUDFLARED_PATH      Explicit cloudflared binary
    TUNNEL_TIMEOUT_S      Seconds to wait for the tunnel URL (30)
    STREAMABLE_USERNAME   Streamable account
    STREAMABLE_PASSWORD
    STREAMABLE_API_URL    Upload endpoint (https://api.streamable.com/upload)
    UPLOAD_CHUNK_SIZE     Upload read size in bytes (262144)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_SHARE_PORT = 8765
DEFAULT_TUNNEL_TIMEOUT_S = 30.0
DEFAULT_STREAMABLE_API_URL = "https://api.streamable.com/upload"
DEFAULT_UPLOAD_CHUNK_SIZE = 256 * 1024


@dataclass
class Settings:
    share_dir: str = ""
    recordings_dir: str = ""
    share_host: str = "127.0.0.1"
    share_port: int = DEFAULT_SHARE_PORT
    cloudflared_path: str = ""
    tunnel_timeout_s: float = DEFAULT_TUNNEL_TIMEOUT_S
    streamable_username: str = ""
    streamable_password: str = ""
    streamable_api_url: str = DEFAULT_STREAMABLE_API_URL
    upload_chunk_size: int = DEFAULT_UPLOAD_CHUNK_SIZE

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            share_dir=os.environ.get("SHARE_DIR", "").strip(),
            recordings_dir=os.environ.get("RECORDINGS_DIR", "").strip(),
            share_host=os.environ.get("SHARE_HOST", "127.0.0.1"),
            share_port=int(os.environ.get("SHARE_PORT", str(DEFAULT_SHARE_PORT))),
            cloudflared_path=os.environ.get("CLOUDFLARED_PATH", "").strip(),
            tunnel_timeout_s=float(os.environ.get("TUNNEL_TIMEOUT_S", str(DEFAULT_TUNNEL_TIMEOUT_S))),
            streamable_username=os.environ.get("STREAMABLE_USERNAME", ""),
            streamable_password=os.environ.get("STREAMABLE_PASSWORD", ""),
            streamable_api_url=os.environ.get("STREAMABLE_API_URL", DEFAULT_STREAMABLE_API_URL),
            upload_chunk_size=int(os.environ.get("UPLOAD_CHUNK_SIZE", str(DEFAULT_UPLOAD_CHUNK_SIZE))),
        )

    def share_dir_path(self) -> Optional[Path]:
        return _as_dir(self.share_dir)

    def recordings_dir_path(self) -> Optional[Path]:
        return _as_dir(self.recordings_dir)

    def has_streamable_credentials(self) -> bool:
        return bool(self.streamable_username and self.streamable_password)


def _as_dir(value: str) -> Optional[Path]:
    if not value:
        return None
    return Path(value).expanduser().resolve()


def get_configured_share_dir() -> Optional[Path]:
    """Configured share directory, or None"""
    return Settings.from_env().share_dir_path()


def get_configured_recordings_dir() -> Optional[Path]:
    """Configured recordings directory, or None"""
    return Settings.from_env().recordings_dir_path()
