# Copyright 2026 BadCompany
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Free port lookup.

The ports are only probed, not reserved; another process may grab a port
before nginx binds it.
"""

import asyncio
import logging
import socket
from typing import Iterable

__all__ = ["get_free_ports", "is_port_free"]

_logger = logging.getLogger("nginx_testing.ports")


def _address_family(host: str) -> socket.AddressFamily:
    infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return infos[0][0]


def _bind(host: str, port: int) -> int:
    """Binds a listening socket to (host, port), closes it and returns the port."""
    with socket.socket(_address_family(host), socket.SOCK_STREAM) as sock:
        sock.bind((host, port))
        sock.listen(1)
        return sock.getsockname()[1]


def is_port_free(host: str, port: int) -> bool:
    try:
        _bind(host, port)
    except OSError as e:
        _logger.debug("Port %s:%d is not available: %s", host, port, e)
        return False
    return True


async def get_free_ports(
    host: str, count: int, preferred: Iterable[int] = ()
) -> list[int]:
    """Finds `count` distinct free ports on `host`.

    Ports from `preferred` are tried first, in order; unavailable ones are
    skipped. When they're exhausted, ports are assigned by the OS.
    """
    ports: list[int] = []
    candidates = iter(preferred)

    while len(ports) < count:
        port = next(
            (p for p in candidates if p not in ports and is_port_free(host, p)),
            None,
        )
        while port is None or port in ports:
            port = _bind(host, 0)
        ports.append(port)
        # Let other tasks run between probes
        await asyncio.sleep(0)

    _logger.debug("Allocated port(s) on %s: %s", host, ports)
    return ports
