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
nginx-testing - Run nginx for integration tests.

Provides:
- A runner that starts nginx on free ports with a templated config
- Structured reading and patching of nginx configs
- Buffered access and error logs
- Cleanup of processes and temporary files
"""

import logging

from .conf import Directive, NginxConf, PatchOperation, parse_conf
from .exceptions import (
    NginxConfigError,
    NginxConfPatchError,
    NginxProcessError,
    NginxStartError,
    NginxStateError,
    NginxTestingError,
)
from .server import NginxOptions, NginxServer, ServerState, start_nginx
from .settings import NginxTestingSettings
from .version_info import NginxVersionInfo

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    "Directive",
    "NginxConf",
    "NginxConfPatchError",
    "NginxConfigError",
    "NginxOptions",
    "NginxProcessError",
    "NginxServer",
    "NginxStartError",
    "NginxStateError",
    "NginxTestingError",
    "NginxTestingSettings",
    "NginxVersionInfo",
    "PatchOperation",
    "ServerState",
    "__version__",
    "parse_conf",
    "start_nginx",
]
