import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Generator

import httpx
import pytest

from nginx_testing.probe import wait_for_http_port_open

HOST = "127.0.0.1"


class _Handler(BaseHTTPRequestHandler):
    def do_HEAD(self) -> None:
        self.send_response(404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format: str, *args: Any) -> None:
        pass


# --- Fixtures ---


@pytest.fixture
def http_server() -> Generator[int, None, None]:
    server = ThreadingHTTPServer((HOST, 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def tcp_only_server() -> Generator[int, None, None]:
    """Accepts TCP connections, but never responds."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((HOST, 0))
        sock.listen(16)
        yield sock.getsockname()[1]


# --- Readiness Tests ---


@pytest.mark.asyncio
async def test_returns_true_on_any_http_response(http_server: int) -> None:
    """A 404 still means the server is up."""
    assert await wait_for_http_port_open(HOST, http_server, timeout=0.5) is True


@pytest.mark.asyncio
async def test_times_out_when_nothing_listens(free_port: Callable[[], int]) -> None:
    timeout = 0.5
    start = time.monotonic()

    assert await wait_for_http_port_open(HOST, free_port(), timeout=timeout) is False

    elapsed = time.monotonic() - start
    assert timeout <= elapsed < timeout + 0.5


@pytest.mark.asyncio
async def test_times_out_when_only_tcp_is_served(tcp_only_server: int) -> None:
    assert await wait_for_http_port_open(HOST, tcp_only_server, timeout=0.5) is False


@pytest.mark.asyncio
async def test_waits_for_server_to_come_up(free_port: Callable[[], int]) -> None:
    port = free_port()
    server_box: list[ThreadingHTTPServer] = []

    def start_later() -> None:
        time.sleep(0.2)
        server = ThreadingHTTPServer((HOST, port), _Handler)
        server_box.append(server)
        server.serve_forever()

    threading.Thread(target=start_later, daemon=True).start()
    try:
        assert await wait_for_http_port_open(HOST, port, timeout=3, interval=0.05) is True
    finally:
        for server in server_box:
            server.shutdown()
            server.server_close()


@pytest.mark.asyncio
async def test_raises_on_unresolvable_host() -> None:
    with pytest.raises(httpx.ConnectError):
        await wait_for_http_port_open("nginx-testing.invalid", 80, timeout=1)
