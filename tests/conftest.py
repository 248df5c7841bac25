import os
import socket
import stat
import sys
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

RESOURCES_DIR = Path(__file__).parent / "resources"


def _make_executable(directory: Path, name: str, script: str) -> str:
    """Writes a shell wrapper running `script` from resources with this Python."""
    path = directory / name
    path.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{RESOURCES_DIR / script}" "$@"\n')
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


# --- Fixtures ---


@pytest.fixture
def fake_nginx(tmp_path: Path) -> str:
    """Path of an executable behaving like a (very) minimal nginx."""
    if os.name == "nt":
        pytest.skip("shell wrappers are not supported on Windows")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    return _make_executable(bin_dir, "nginx", "fake_nginx.py")


@pytest.fixture
def failing_binary(tmp_path: Path) -> str:
    """Path of an executable that prints an error and exits with status 1."""
    if os.name == "nt":
        pytest.skip("shell wrappers are not supported on Windows")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    return _make_executable(bin_dir, "fail", "fail.py")


@pytest.fixture
def free_port() -> Callable[[], int]:
    """Returns a function giving a port that is free at the moment."""

    def get() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]

    return get


@pytest.fixture
def mock_subprocess() -> AsyncMock:
    """Provides a fully mocked asyncio subprocess."""
    process = AsyncMock()
    process.pid = 4242
    process.stderr = None
    process.terminate = MagicMock()
    process.kill = MagicMock()
    process.send_signal = MagicMock()
    process.returncode = None
    return process
