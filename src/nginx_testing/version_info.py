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

"""Version and build info of an nginx binary, parsed from `nginx -V`."""

import asyncio
import contextlib
import logging
import re
from typing import Literal

from pydantic import BaseModel, Field

from .exceptions import NginxProcessError

__all__ = ["ModuleFlag", "NginxVersionInfo", "nginx_version_info", "parse_version_info"]

ModuleFlag = Literal["with", "with-dynamic", "without"]

_VERSION_RX = re.compile(r"^nginx version: nginx/(\S+)", re.MULTILINE)
_CONFIGURE_RX = re.compile(r"^configure arguments: (.*)", re.MULTILINE)
_MODULE_RX = re.compile(r"--(with(?:out)?)-(\w+)_module(?:=(\w+))?\b")

_logger = logging.getLogger("nginx_testing.version_info")


class NginxVersionInfo(BaseModel):
    """
    Attributes:
        version: Nginx version number (e.g. '1.24.0').
        modules: Modules the nginx was built with or without, e.g.
            {'http_fastcgi': 'without', 'http_geoip': 'with-dynamic'}.
    """

    version: str = ""
    modules: dict[str, ModuleFlag] = Field(default_factory=dict)


def parse_version_info(output: str) -> NginxVersionInfo:
    version = _VERSION_RX.search(output)
    configure = _CONFIGURE_RX.search(output)

    modules: dict[str, ModuleFlag] = {}
    if configure:
        for m in _MODULE_RX.finditer(configure.group(1)):
            flag, name, kind = m.groups()
            modules[name] = "with-dynamic" if kind == "dynamic" else flag

    return NginxVersionInfo(
        version=version.group(1) if version else "",
        modules=modules,
    )


async def nginx_version_info(bin_path: str, timeout: float = 5.0) -> NginxVersionInfo:
    """Executes `<bin_path> -V` and returns its parsed output.

    Raises:
        NginxProcessError: If the binary cannot be executed or exits with non-zero status.
    """
    _logger.debug("Executing '%s -V'", bin_path)
    try:
        process = await asyncio.create_subprocess_exec(
            bin_path,
            "-V",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise NginxProcessError(
            f"Failed to execute {bin_path}: {e}", binary=bin_path
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise NginxProcessError(
            f"Command timed out after {timeout}s: {bin_path} -V", binary=bin_path
        ) from e

    # nginx prints this on stderr
    output = (stderr or stdout).decode(errors="replace")
    if process.returncode != 0:
        raise NginxProcessError(
            f"Command failed with exit code {process.returncode}: {bin_path} -V\n"
            f"{output.strip()}",
            exit_code=process.returncode,
            stderr=output,
            binary=bin_path,
        )

    _logger.debug("nginx -V: %s", output)
    return parse_version_info(output)
