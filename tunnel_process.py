"""
tunnel_process.py - cloudflared quick tunnel supervisor

Starts `cloudflared tunnel --url http://localhost:<port>` and scrapes the
public https://<name>.trycloudflare.com URL out of its output. cloudflared
prints it on stderr today; both streams are merged so that does not matter.

The URL parsing sits behind TunnelURLResolver so another tunnel client (or
a future cloudflared that reports the URL in a structured way) only needs a
new resolver.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional, Protocol, Union

from share_config import DEFAULT_TUNNEL_TIMEOUT_S

log = logging.getLogger("tunnel_process")

PathLike = Union[str, Path]

TRYCLOUDFLARE_URL_RE = re.compile(r"https://([a-z0-9-]+)\.trycloudflare\.com", re.IGNORECASE)

# Control-plane host that shows up in cloudflared's own error lines
IGNORED_TUNNEL_HOSTS = {"api"}

OUTPUT_TAIL_LINES = 50
KILL_GRACE_S = 5.0


# =========================
# Errors
# =========================

class TunnelError(RuntimeError):
    """Base class for tunnel failures"""


class TunnelBinaryNotFound(TunnelError):
    """cloudflared is not installed where we look for it"""


class TunnelUnavailable(TunnelError):
    """cloudflared could not be started or died before giving us a URL"""


class TunnelTimeout(TunnelUnavailable):
    """cloudflared did not report a URL in time"""


# =========================
# URL resolution
# =========================

class TunnelURLResolver(Protocol):
    """Turns tunnel client output into the public URL, once it appears"""

    def feed(self, text: str) -> Optional[str]: ...


class TryCloudflareResolver:
    """Picks the first https://<name>.trycloudflare.com URL"""

    def __init__(self, pattern: re.Pattern = TRYCLOUDFLARE_URL_RE):
        self.pattern = pattern

    def feed(self, text: str) -> Optional[str]:
        for m in self.pattern.finditer(text):
            if m.group(1).lower() in IGNORED_TUNNEL_HOSTS:
                continue
            return m.group(0)
        return None


# =========================
# Binary lookup
# =========================

def _platform_dir() -> str:
    if sys.platform == "win32":
        return "win32"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def find_cloudflared(configured: Optional[PathLike] = None) -> Optional[Path]:
    """
    Locate the cloudflared executable.

    Order: explicit path (argument or CLOUDFLARED_PATH), the bundled
    resources/cloudflared/<platform>/ copy, then PATH. An explicit path that
    does not exist is not silently replaced by another binary.
    """
    configured = configured or os.environ.get("CLOUDFLARED_PATH")
    if configured:
        p = Path(configured).expanduser()
        return p if p.is_file() else None

    exe = "cloudflared.exe" if os.name == "nt" else "cloudflared"
    bundled = Path(__file__).resolve().parent / "resources" / "cloudflared" / _platform_dir() / exe
    if bundled.is_file():
        return bundled

    found = shutil.which("cloudflared")
    return Path(found) if found else None


# =========================
# Supervisor
# =========================

class _Run:
    """State of one spawned cloudflared process"""

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc
        self.url: Optional[str] = None
        self.url_ready = threading.Event()
        self.output: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        self.stopping = False


class TunnelProcess:
    """
    One cloudflared child process.

    spawn() blocks until the public URL is known. If the child exits later,
    `on_exit(returncode)` is called from the output reader thread, unless
    the exit was caused by kill().
    """

    def __init__(
        self,
        binary: Optional[PathLike] = None,
        resolver: Optional[TunnelURLResolver] = None,
        timeout_s: float = DEFAULT_TUNNEL_TIMEOUT_S,
        on_exit: Optional[Callable[[int], None]] = None,
    ):
        self.binary = binary
        self.resolver = resolver or TryCloudflareResolver()
        self.timeout_s = timeout_s
        self.on_exit = on_exit
        self._run: Optional[_Run] = None

    @property
    def is_alive(self) -> bool:
        run = self._run
        return run is not None and run.proc.poll() is None

    @property
    def public_url(self) -> Optional[str]:
        run = self._run
        return run.url if run is not None else None

    @property
    def pid(self) -> Optional[int]:
        run = self._run
        return run.proc.pid if run is not None else None

    def output_tail(self) -> List[str]:
        run = self._run
        return list(run.output) if run is not None else []

    def build_command(self, binary: Path, local_port: int) -> List[str]:
        return [str(binary), "tunnel", "--url", f"http://localhost:{local_port}"]

    def spawn(self, local_port: int) -> str:
        """Start cloudflared for `local_port` and return the public URL"""
        if self.is_alive and self.public_url:
            return self.public_url
        self.kill()

        binary = find_cloudflared(self.binary)
        if binary is None:
            raise TunnelBinaryNotFound(
                "cloudflared binary not found. Install it or set CLOUDFLARED_PATH "
                "(https://github.com/cloudflare/cloudflared/releases)"
            )

        cmd = self.build_command(binary, local_port)
        log.info(f"Starting tunnel: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise TunnelUnavailable(f"Could not start cloudflared: {e}") from e

        run = _Run(proc)
        self._run = run
        threading.Thread(
            target=self._read_output,
            args=(run,),
            name="tunnel-output",
            daemon=True,
        ).start()

        if not run.url_ready.wait(self.timeout_s):
            self.kill()
            raise TunnelTimeout(f"Timeout waiting for cloudflared tunnel URL ({self.timeout_s:.0f}s)")

        if run.url is None:
            self._run = None
            tail = " | ".join(list(run.output)[-5:]) or "no output"
            raise TunnelUnavailable(
                f"cloudflared exited (code {proc.returncode}) before reporting a URL: {tail}"
            )

        log.info(f"Tunnel URL: {run.url}")
        return run.url

    def _read_output(self, run: _Run) -> None:
        proc = run.proc
        try:
            if proc.stdout is not None:
                for line in proc.stdout:
                    line = line.rstrip()
                    run.output.append(line)
                    log.debug(f"[cloudflared] {line}")
                    if not run.url_ready.is_set():
                        url = self.resolver.feed(line)
                        if url:
                            run.url = url
                            run.url_ready.set()
        except (OSError, ValueError):
            pass  # pipe closed under us by kill()

        returncode = proc.wait()
        had_url = run.url is not None
        run.url_ready.set()

        if run.stopping or not had_url:
            return

        log.warning(f"cloudflared exited unexpectedly (code {returncode})")
        if self.on_exit is not None:
            try:
                self.on_exit(returncode)
            except Exception:
                log.exception("Tunnel exit handler failed")

    def kill(self) -> None:
        """Stop cloudflared. Safe to call when nothing is running."""
        run = self._run
        self._run = None
        if run is None:
            return
        run.stopping = True
        proc = run.proc
        if proc.poll() is None:
            log.info(f"Stopping cloudflared (PID: {proc.pid})")
            proc.terminate()
            try:
                proc.wait(timeout=KILL_GRACE_S)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
