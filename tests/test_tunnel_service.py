import os
import signal
import tempfile
import threading
import unittest
from pathlib import Path

import requests

from fake_services import FAKE_URL, IS_WINDOWS, make_fake_cloudflared
from share_config import Settings
from share_server import ShareServer
from tunnel_process import TunnelBinaryNotFound, TunnelProcess
from tunnel_service import ShareRootNotConfigured, TunnelInfo, TunnelService, resolve_share_root


class TestShareRoot(unittest.TestCase):
    def test_share_dir_wins(self):
        self.assertEqual(resolve_share_root(Path("/a"), Path("/b")), Path("/a"))

    def test_recordings_fallback(self):
        self.assertEqual(resolve_share_root(None, Path("/b")), Path("/b"))

    def test_nothing_configured(self):
        with self.assertRaises(ShareRootNotConfigured):
            resolve_share_root(None, None)


class TestTunnelInfo(unittest.TestCase):
    def test_defaults(self):
        info = TunnelInfo()
        self.assertEqual(info.to_dict(), {"url": "", "is_active": False, "port": 8765})

    def test_from_settings(self):
        service = TunnelService.from_settings(Settings(share_port=9999))
        self.assertEqual(service.get_info(), TunnelInfo(url="", is_active=False, port=9999))
        self.assertIsNone(service.get_file_url("clip.mp4"))


class RecordingServerFactory:
    def __init__(self):
        self.servers = []

    def __call__(self, root, port, host):
        server = ShareServer(root, port=port, host=host)
        self.servers.append(server)
        return server


class TestStartFailures(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_no_directory_configured(self):
        factory = RecordingServerFactory()
        service = TunnelService(
            share_dir_lookup=lambda: None,
            recordings_dir_lookup=lambda: None,
            port=0,
            server_factory=factory,
        )
        with self.assertRaises(ShareRootNotConfigured):
            service.start()
        self.assertEqual(factory.servers, [])
        self.assertFalse(service.get_info().is_active)

    def test_missing_binary_stops_server(self):
        factory = RecordingServerFactory()
        service = TunnelService(
            share_dir_lookup=lambda: self.root,
            recordings_dir_lookup=lambda: None,
            port=0,
            tunnel=TunnelProcess(binary=self.root / "no-cloudflared"),
            server_factory=factory,
        )
        with self.assertRaises(TunnelBinaryNotFound):
            service.start()

        self.assertEqual(len(factory.servers), 1)
        self.assertFalse(factory.servers[0].is_running)
        self.assertFalse(service.get_info().is_active)


@unittest.skipIf(IS_WINDOWS, "fake cloudflared is a shebang script")
class TestTunnelService(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        base = Path(self.tmp.name)
        self.root = base / "share"
        self.root.mkdir()
        (self.root / "clip.mp4").write_bytes(b"0123456789")
        self.tunnel = TunnelProcess(binary=make_fake_cloudflared(base, "url"), timeout_s=10)
        self.service = TunnelService(
            share_dir_lookup=lambda: self.root,
            recordings_dir_lookup=lambda: None,
            port=0,
            tunnel=self.tunnel,
        )
        self.session = requests.Session()
        self.session.trust_env = False

    def tearDown(self):
        self.service.stop()
        self.session.close()
        self.tmp.cleanup()

    def test_inactive_before_start(self):
        info = self.service.get_info()
        self.assertFalse(info.is_active)
        self.assertEqual(info.url, "")
        self.assertIsNone(self.service.get_file_url("clip.mp4"))

    def test_start(self):
        info = self.service.start()

        self.assertTrue(info.is_active)
        self.assertEqual(info.url, FAKE_URL)
        self.assertNotEqual(info.port, 0)
        self.assertEqual(self.service.get_info(), info)
        self.assertIn(f"--url http://localhost:{info.port}", " ".join(self.tunnel.output_tail()))

        r = self.session.get(f"http://127.0.0.1:{info.port}/clip.mp4", timeout=10)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.content, b"0123456789")

    def test_file_urls(self):
        self.service.start()
        self.assertEqual(self.service.get_file_url("clip.mp4"), f"{FAKE_URL}/clip.mp4")
        self.assertEqual(
            self.service.get_file_url("sub dir/clip #1.mp4"),
            f"{FAKE_URL}/sub%20dir/clip%20%231.mp4",
        )
        self.assertEqual(self.service.get_file_url("/clip.mp4"), f"{FAKE_URL}/clip.mp4")

    def test_start_is_idempotent(self):
        first = self.service.start()
        pid = self.tunnel.pid
        second = self.service.start()
        self.assertEqual(first, second)
        self.assertEqual(self.tunnel.pid, pid)

    def test_stop(self):
        info = self.service.start()
        self.service.stop()

        self.assertFalse(self.service.get_info().is_active)
        self.assertIsNone(self.service.get_file_url("clip.mp4"))
        self.assertFalse(self.tunnel.is_alive)
        with self.assertRaises(requests.ConnectionError):
            self.session.get(f"http://127.0.0.1:{info.port}/clip.mp4", timeout=5)

        self.service.stop()  # no-op

    def test_restart_after_stop(self):
        self.service.start()
        self.service.stop()
        info = self.service.start()
        self.assertTrue(info.is_active)

    def test_subscribers_see_changes(self):
        events = []
        unsubscribe = self.service.subscribe(events.append)

        self.service.start()
        self.service.stop()
        self.assertEqual([e.is_active for e in events], [True, False])
        self.assertEqual(events[0].url, FAKE_URL)

        unsubscribe()
        self.service.start()
        self.assertEqual(len(events), 2)

    def test_broken_subscriber_does_not_break_start(self):
        def broken(info):
            raise RuntimeError("subscriber bug")

        self.service.subscribe(broken)
        self.assertTrue(self.service.start().is_active)

    def test_tunnel_killed_externally(self):
        went_down = threading.Event()
        events = []

        def on_change(info):
            events.append(info)
            if not info.is_active:
                went_down.set()

        self.service.subscribe(on_change)
        info = self.service.start()
        os.kill(self.tunnel.pid, signal.SIGKILL)

        self.assertTrue(went_down.wait(10))
        self.assertFalse(self.service.get_info().is_active)
        self.assertIsNone(self.service.get_file_url("clip.mp4"))
        self.assertEqual(events[-1].url, "")
        with self.assertRaises(requests.ConnectionError):
            self.session.get(f"http://127.0.0.1:{info.port}/clip.mp4", timeout=5)

        # and it can come back
        self.assertTrue(self.service.start().is_active)


if __name__ == "__main__":
    unittest.main()
