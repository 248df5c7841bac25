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

"""HTTP readiness check."""

import asyncio
import logging
import socket
import time

import httpx

__all__ = ["wait_for_http_port_open"]

# Errors meaning "nothing is responding yet"; anything else is fatal
_TRANSIENT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)

_logger = logging.getLogger("nginx_testing.probe")


def _is_name_resolution_error(exc: BaseException) -> bool:
    seen = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        if isinstance(cur, socket.gaierror):
            return True
        seen.add(id(cur))
        cur = cur.__cause__ or cur.__context__
    return False


def _format_host(host: str) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


async def wait_for_http_port_open(
    host: str,
    port: int,
    timeout: float,
    interval: float = 0.1,
    *,
    path: str = "/",
    method: str = "HEAD",
    logger: logging.Logger | None = None,
) -> bool:
    """
    Waits until the port is open and accepting an HTTP request, or `timeout`
    (in seconds) expires.

    Any HTTP response, regardless of its status, counts as success.

    Returns:
        True on success, False if refused, reset or timed out until the timeout.

    Raises:
        httpx.HTTPError: On unexpected errors, e.g. unresolvable host.
        httpx.InvalidURL: If `host` is not a valid host name or address.
    """
    log = logger or _logger
    url = f"http://{_format_host(host)}:{port}{path}"
    start = time.monotonic()

    # Proxy settings from the environment must not apply to a local check
    async with httpx.AsyncClient(trust_env=False) as client:
        while True:
            elapsed = time.monotonic() - start
            log.debug("Trying to connect %s %s", method, url)
            try:
                # Each attempt gets the remaining time budget
                attempt_timeout = max(timeout - elapsed, interval)
                await client.request(method, url, timeout=attempt_timeout)
                return True
            except _TRANSIENT_ERRORS as e:
                if _is_name_resolution_error(e):
                    raise
                log.debug("Got %s: %s", type(e).__name__, e)

            elapsed = time.monotonic() - start
            if elapsed > timeout:
                log.debug("Timed out after %dms", elapsed * 1000)
                return False
            await asyncio.sleep(interval)
