#!/usr/bin/env python3
"""
Clip Share - Launch Script

Shares local clips over a Cloudflare quick tunnel (no account, no server of
our own) or uploads them to Streamable.

Commands:
    python launch.py serve                      # Start server + tunnel, print URL
    python launch.py share clip.mp4             # Share one clip via tunnel
    python launch.py share clip.mp4 --streamable
    python launch.py upload clip.mp4            # Upload to Streamable
    python launch.py replace clip.mp4 _temp_trim_clip.mp4

Requirements:
    - .env file with SHARE_DIR and/or RECORDINGS_DIR (see share_config.py)
    - cloudflared on PATH, bundled under resources/cloudflared/, or CLOUDFLARED_PATH
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from media_files import replace_file
from share_config import Settings
from share_server import ShareServerError
from share_service import ShareRequest, share_media
from streamable_client import StreamableClient, UploadError, UploadProgress, share_url
from tunnel_process import TunnelError
from tunnel_service import ShareRootNotConfigured, TunnelInfo, TunnelService

load_dotenv()

log = logging.getLogger("launch")

MONITOR_INTERVAL_S = 5


def setup_logging(debug: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not debug:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def print_progress(p: UploadProgress) -> None:
    print(
        f"\r  Progress: {p.percent:3d}% ({p.bytes_sent // (1024 * 1024)} / {p.total_bytes // (1024 * 1024)} MB)",
        end="",
        flush=True,
    )


def print_status(settings: Settings, info: TunnelInfo) -> None:
    print()
    print("=" * 60)
    print("Clip Share - Running")
    print("=" * 60)
    print()
    print(f"  Serving:     {settings.share_dir or settings.recordings_dir}")
    print(f"  Local:       http://{settings.share_host}:{info.port}")
    print(f"  Public URL:  {info.url}")
    print()
    print("Anyone with a link can download the file it points to.")
    print("Press Ctrl+C to stop sharing")
    print("=" * 60)


# =========================
# Commands
# =========================

def cmd_serve(settings: Settings) -> int:
    tunnel = TunnelService.from_settings(settings)
    try:
        info = tunnel.start()
    except (ShareRootNotConfigured, ShareServerError, TunnelError, OSError) as e:
        print(f"ERROR: {e}")
        return 1

    def on_change(new_info: TunnelInfo) -> None:
        if not new_info.is_active:
            print("\nWARNING: Tunnel stopped unexpectedly")

    unsubscribe = tunnel.subscribe(on_change)
    print_status(settings, info)

    # Handle Ctrl+C
    def signal_handler(sig, frame):
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while tunnel.get_info().is_active:
            time.sleep(MONITOR_INTERVAL_S)
    except KeyboardInterrupt:
        pass
    finally:
        unsubscribe()
        print("\nStopping...")
        tunnel.stop()
        print("Sharing stopped.")
    return 0


def cmd_share(settings: Settings, path: Path, streamable: bool) -> int:
    tunnel = TunnelService.from_settings(settings)
    destination = "streamable" if streamable else "tunnel"
    result = share_media(
        ShareRequest(path=str(path), destination=destination),
        settings,
        tunnel,
        on_progress=print_progress if streamable else None,
    )
    if streamable:
        print()
    if not result.success:
        print(f"ERROR: {result.error}")
        tunnel.stop()
        return 1

    print(f"Share URL: {result.share_url}")
    if result.already_shared:
        print("(file was already in the share folder)")
    if destination == "streamable":
        return 0

    print("Keep this running while the link is in use. Press Ctrl+C to stop.")
    try:
        while tunnel.get_info().is_active:
            time.sleep(MONITOR_INTERVAL_S)
    except KeyboardInterrupt:
        pass
    finally:
        tunnel.stop()
    return 0


def cmd_upload(settings: Settings, path: Path) -> int:
    if not settings.has_streamable_credentials():
        print("ERROR: Set STREAMABLE_USERNAME and STREAMABLE_PASSWORD")
        return 1
    client = StreamableClient(api_url=settings.streamable_api_url, chunk_size=settings.upload_chunk_size)
    try:
        shortcode = client.upload(
            path,
            settings.streamable_username,
            settings.streamable_password,
            on_progress=print_progress,
        )
    except UploadError as e:
        print()
        print(f"ERROR ({e.kind.value}): {e}")
        return 1
    finally:
        client.close()
    print()
    print(f"Uploaded: {share_url(shortcode)}")
    return 0


def cmd_replace(target: Path, staged: Path) -> int:
    result = replace_file(target, staged)
    if not result.success:
        print(f"ERROR: {result.error}")
        return 1
    print(f"Replaced: {result.new_path}")
    return 0


# =========================
# Main
# =========================

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Share clips via Cloudflare tunnel or Streamable")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--share-dir", help="Override SHARE_DIR")
    parser.add_argument("--recordings-dir", help="Override RECORDINGS_DIR")
    parser.add_argument("--port", type=int, help="Override SHARE_PORT")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("serve", help="Start server + tunnel and keep it running")

    share_p = sub.add_parser("share", help="Share one file")
    share_p.add_argument("path", type=Path)
    share_p.add_argument("--streamable", action="store_true", help="Upload to Streamable instead of tunneling")

    upload_p = sub.add_parser("upload", help="Upload one file to Streamable")
    upload_p.add_argument("path", type=Path)

    replace_p = sub.add_parser("replace", help="Atomically replace TARGET with STAGED")
    replace_p.add_argument("target", type=Path)
    replace_p.add_argument("staged", type=Path)

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    settings = Settings.from_env()
    if args.share_dir is not None:
        settings.share_dir = args.share_dir
    if args.recordings_dir is not None:
        settings.recordings_dir = args.recordings_dir
    if args.port is not None:
        settings.share_port = args.port

    if args.cmd == "serve":
        return cmd_serve(settings)
    if args.cmd == "share":
        return cmd_share(settings, args.path, args.streamable)
    if args.cmd == "upload":
        return cmd_upload(settings, args.path)
    if args.cmd == "replace":
        return cmd_replace(args.target, args.staged)
    return 2


if __name__ == "__main__":
    sys.exit(main())
