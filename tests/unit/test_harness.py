"""Tests for harness building blocks: termination, readiness and the proxied request."""

import socket
import subprocess
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from rulegate.harness import Termination, probe_through_proxy, wait_for_listener
from rulegate.models import ProbeTarget


def _proxy_answering(status):
    """HTTP proxy stand-in that answers every forwarded request with ``status``."""
    seen = []

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            seen.append(self.path)
            self.send_response(status)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server, seen


@pytest.fixture
def proxy_server():
    servers = []

    def start(status):
        server, seen = _proxy_answering(status)
        servers.append(server)
        return server.server_address[1], seen

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()


class TestProbeThroughProxy:

    def test_returns_status_from_proxy(self, proxy_server):
        port, seen = proxy_server(204)
        status = probe_through_proxy(ProbeTarget(url="http://cp.example.test/generate_204"), port, timeout=5.0)

        assert status == 204
        assert seen == ["http://cp.example.test/generate_204"]

    def test_non_success_status_is_returned_not_raised(self, proxy_server):
        port, _ = proxy_server(503)
        target = ProbeTarget(url="http://cp.example.test/")

        status = probe_through_proxy(target, port, timeout=5.0)

        assert status == 503
        assert not target.is_success(status)

    def test_ignores_proxy_environment(self, proxy_server, monkeypatch):
        port, seen = proxy_server(200)
        monkeypatch.setenv("HTTP_PROXY", "http://127.0.0.1:9")
        monkeypatch.setenv("ALL_PROXY", "http://127.0.0.1:9")

        assert probe_through_proxy(ProbeTarget(url="http://cp.example.test/"), port, timeout=5.0) == 200
        assert len(seen) == 1

    def test_nothing_listening_raises_http_error(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as placeholder:
            placeholder.bind(("127.0.0.1", 0))
            port = placeholder.getsockname()[1]

        with pytest.raises(httpx.HTTPError):
            probe_through_proxy(ProbeTarget(url="http://cp.example.test/"), port, timeout=2.0)


class TestTermination:

    def test_first_trigger_wins_reason(self, fake_engine):
        proc = subprocess.Popen([fake_engine("exec sleep 30")])
        termination = Termination(proc)
        termination.terminate("teardown")
        termination.kill("hard timeout")
        proc.wait(timeout=5)

        assert termination.reason == "teardown"
        assert termination.triggered

    def test_signalling_an_exited_process_is_harmless(self, fake_engine):
        proc = subprocess.Popen([fake_engine("exit 0")])
        proc.wait(timeout=5)
        termination = Termination(proc)
        termination.terminate("teardown")
        termination.kill("hard timeout")
        assert proc.returncode == 0


class TestWaitForListener:

    def test_ready_when_port_accepts(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen()
            port = server.getsockname()[1]

            assert wait_for_listener(port, timeout=2.0, initial_backoff=0.01, max_backoff=0.05)

    def test_times_out_on_closed_port(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as placeholder:
            placeholder.bind(("127.0.0.1", 0))
            port = placeholder.getsockname()[1]

        started = time.monotonic()
        assert not wait_for_listener(port, timeout=0.3, initial_backoff=0.01, max_backoff=0.05)
        assert time.monotonic() - started < 3.0

    def test_stops_when_process_dies(self):
        sleeps = []
        ready = wait_for_listener(1, timeout=10.0, initial_backoff=0.01, max_backoff=0.05,
                                  is_alive=lambda: False, sleep=sleeps.append)
        assert ready is False
        assert sleeps == []

    def test_backoff_grows_and_is_capped(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as placeholder:
            placeholder.bind(("127.0.0.1", 0))
            port = placeholder.getsockname()[1]

        now = [0.0]
        sleeps = []

        def fake_sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        wait_for_listener(port, timeout=2.0, initial_backoff=0.1, max_backoff=0.4,
                          sleep=fake_sleep, clock=lambda: now[0])

        assert sleeps[:3] == [0.1, 0.2, 0.4]
        assert max(sleeps) <= 0.4
