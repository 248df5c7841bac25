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
Nginx Binary Resolution.

Finds the nginx executable to run. Downloading a binary for a version
constraint is delegated to a caller-supplied BinaryResolver.
"""

import inspect
import logging
import os
import shutil
from typing import Awaitable, Callable, Union

from .exceptions import NginxConfigError
from .settings import NginxTestingSettings, get_settings

__all__ = ["BinaryResolver", "resolve_binary"]

# Takes a version constraint (e.g. '1.24.x'), returns path of the binary
BinaryResolver = Callable[[str], Union[str, Awaitable[str]]]

_logger = logging.getLogger("nginx_testing.binary")


async def resolve_binary(
    bin_path: str | None = None,
    version: str | None = None,
    resolver: BinaryResolver | None = None,
    settings: NginxTestingSettings | None = None,
) -> str:
    """
    Resolve the nginx binary via version resolver, explicit path, settings or PATH.

    The returned path is not verified to be runnable; a missing binary is
    reported when it's executed.

    Raises:
        NginxConfigError: If `version` is given without a `resolver`.
    """
    # 1. Version constraint (bin_path is ignored)
    if version:
        if resolver is None:
            raise NginxConfigError(
                f"Option version ({version}) requires a binary resolver",
                config_key="version",
            )
        result = resolver(version)
        path = await result if inspect.isawaitable(result) else result
        _logger.debug("Resolved nginx %s to %s", version, path)
        return os.path.abspath(path)

    # 2. Explicit path or name, then settings (NGINX_TESTING_BIN_PATH)
    name = bin_path or (settings or get_settings()).bin_path

    # 3. Look up bare names in PATH
    found = shutil.which(name)
    if found:
        return os.path.abspath(found)

    _logger.debug("nginx binary %s not found in PATH", name)
    return name
