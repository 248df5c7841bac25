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
Config Templating.

Substitutes placeholders in the nginx config and patches it for compatibility
with the runner.

Placeholders:
- `__ADDRESS__`: the bind address.
- `__CONFDIR__`: directory of the rendered config file.
- `__CWD__`: the current working directory.
- `__WORKDIR__`: nginx's working directory (prefix).
- `__PORT__`, `__PORT_0__`, ..., `__PORT_9__`: the allocated ports.
"""

import os
import re
from typing import Mapping, Sequence

from pydantic import BaseModel, Field

from .conf import PatchOperation, parse_conf

__all__ = [
    "CONFIG_PATCH",
    "CompatPatchOperation",
    "ConfigParams",
    "adjust_config",
    "count_needed_ports",
    "is_master_process_enabled",
    "render_placeholders",
]

_PORT_PLACEHOLDER_RX = re.compile(r"\b__PORT(?:_(\d))?__\b")
_NAMED_PLACEHOLDER_RX = re.compile(r"\b__([A-Z_]+)__\b")

# Module flags that mean the module is not compiled in statically
_UNAVAILABLE_MODULE_FLAGS = ("without", "with-dynamic")


class CompatPatchOperation(PatchOperation):
    """Patch operation applied only if nginx is built with `if_module`."""

    if_module: str | None = None


class ConfigParams(BaseModel):
    bind_address: str
    config_path: str
    ports: list[int]
    work_dir: str
    modules: dict[str, str] = Field(default_factory=dict)


# The default patch to be applied on the nginx configs to make it compatible
# with the runner.
CONFIG_PATCH: tuple[CompatPatchOperation, ...] = (
    CompatPatchOperation(path="/daemon", op="set", value="off"),
    CompatPatchOperation(path="/pid", op="set", value="nginx.pid"),
    # Otherwise nginx cannot be killed on Windows.
    CompatPatchOperation(path="/master_process", op="default", value="off"),
    CompatPatchOperation(path="/error_log", op="default", value="stderr info"),
    CompatPatchOperation(path="/http/access_log", op="default", value="access.log"),
    CompatPatchOperation(
        path="/http/client_body_temp_path", op="default", value="client_body_temp"
    ),
    CompatPatchOperation(
        path="/http/proxy_temp_path", op="default", value="proxy_temp",
        if_module="http_proxy",
    ),
    CompatPatchOperation(
        path="/http/fastcgi_temp_path", op="default", value="fastcgi_temp",
        if_module="http_fastcgi",
    ),
    CompatPatchOperation(
        path="/http/uwsgi_temp_path", op="default", value="uwsgi_temp",
        if_module="http_uwsgi",
    ),
    CompatPatchOperation(
        path="/http/scgi_temp_path", op="default", value="scgi_temp",
        if_module="http_scgi",
    ),
)


def count_needed_ports(config: str) -> int:
    """Returns the highest port placeholder index plus one, or 0 if there's none."""
    indexes = [int(m.group(1) or 0) for m in _PORT_PLACEHOLDER_RX.finditer(config)]
    return max(indexes, default=-1) + 1


def _unix_path(path: str) -> str:
    # nginx requires forward slashes even on Windows
    return path.replace("\\", "/")


def render_placeholders(config: str, params: ConfigParams) -> str:
    """Replaces the placeholders with the values from `params`.

    Placeholders without a value are left verbatim.
    """
    ports = params.ports

    def port_repl(match: re.Match[str]) -> str:
        index = int(match.group(1) or 0)
        return str(ports[index]) if index < len(ports) else match.group(0)

    placeholders: Mapping[str, str] = {
        "ADDRESS": params.bind_address,
        "CONFDIR": _unix_path(os.path.dirname(params.config_path)),
        "CWD": _unix_path(os.getcwd()),
        "WORKDIR": _unix_path(params.work_dir),
    }

    def named_repl(match: re.Match[str]) -> str:
        return placeholders.get(match.group(1), match.group(0))

    config = _PORT_PLACEHOLDER_RX.sub(port_repl, config)
    return _NAMED_PLACEHOLDER_RX.sub(named_repl, config)


def _compat_patch(
    modules: Mapping[str, str], patch: Sequence[CompatPatchOperation] = CONFIG_PATCH
) -> list[CompatPatchOperation]:
    return [
        op for op in patch
        if not op.if_module
        or modules.get(op.if_module) not in _UNAVAILABLE_MODULE_FLAGS
    ]


def adjust_config(config: str, params: ConfigParams) -> str:
    """Renders the placeholders and applies CONFIG_PATCH on the config."""
    config = render_placeholders(config, params)

    patch = _compat_patch(params.modules)
    if patch:
        config = parse_conf(config).apply_patch(patch).dump()
    return config


def is_master_process_enabled(config: str) -> bool:
    node = parse_conf(config).find("/master_process")
    if isinstance(node, list):
        node = node[-1]
    return node is None or node.args != ["off"]
