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
Nginx Config Editor.

Path based navigation and mutation on top of a parsed nginx config. Tokenizing
is done by crossplane's lexer; this module builds a tree of Directive nodes
from the tokens and prints it back, keeping quoted arguments quoted.

Example:
    conf = parse_conf(source)
    conf.get("/http/server/listen")  # ['80', '[::]:80']
    conf.apply_patch([{"op": "set", "path": "/daemon", "value": "off"}])
    print(conf)

Paths look like JSON Pointers: `/http/server/1/listen` points to directive
`listen` in the second `server` context inside `http` context.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Literal, Mapping, Union

import crossplane
from crossplane.errors import NgxParserBaseException
from pydantic import BaseModel, field_validator, model_validator

from .exceptions import NginxConfigError, NginxConfPatchError

__all__ = [
    "Directive",
    "NginxConf",
    "PatchOperation",
    "apply_operation",
    "parse_conf",
    "resolve",
    "split_args",
]

_INDENT = 2

# Quoted (single or double) or bare argument
_ARG_RX = re.compile(r"""'((?:[^'\\]|\\.)*)'|"((?:[^"\\]|\\.)*)"|(\S+)""")

# Characters that end or split a bare token
_NEEDS_QUOTES_RX = re.compile(r"""^[#"']|[\s;{}]""")

Token = tuple[str, int, bool]

_logger = logging.getLogger("nginx_testing.conf")


def _quote(arg: str, quoted: bool = False) -> str:
    if not quoted and arg and not _NEEDS_QUOTES_RX.search(arg):
        return arg
    quote = "'" if '"' in arg and "'" not in arg else '"'
    return quote + arg.replace(quote, "\\" + quote) + quote


# -------------------------------------------------------------------------
# Type Definitions
# -------------------------------------------------------------------------


@dataclass
class Directive:
    """A single nginx directive; a context when `block` is not None.

    `quoted` holds a flag per argument telling whether it was quoted in the
    source; missing flags count as False.
    """

    name: str
    args: list[str] = field(default_factory=list)
    block: list["Directive"] | None = None
    line: int = 0
    comment: str | None = None
    quoted: list[bool] = field(default_factory=list)

    @property
    def is_context(self) -> bool:
        return self.block is not None

    @property
    def value(self) -> str:
        """Arguments joined by a space, quoted where needed.

        Splitting the value with split_args() gives back `args`. Empty for a
        context without arguments.
        """
        return " ".join(self.quoted_args())

    def quoted_args(self) -> list[str]:
        flags = self.quoted + [False] * (len(self.args) - len(self.quoted))
        return [_quote(arg, flag) for arg, flag in zip(self.args, flags)]

    def children(self, name: str) -> list["Directive"]:
        return [d for d in self.block or () if d.name == name]


Node = Union[Directive, list[Directive]]


class PatchOperation(BaseModel):
    """A patch operation to be performed on nginx config.

    Based on JSON Patch, but with different operations:

    - `add`: adds a directive.
    - `default`: adds a directive if it's not declared yet.
    - `remove`: removes all declarations of a directive in its context.
    - `set`: like `remove` followed by `add`.
    """

    op: Literal["add", "default", "remove", "set"]
    path: str
    value: str | None = None

    @field_validator("path")
    @classmethod
    def _check_path(cls, path: str) -> str:
        if not path.startswith("/"):
            raise ValueError(f"Invalid directive path: {path!r}")
        return path

    @model_validator(mode="after")
    def _check_value(self) -> "PatchOperation":
        if self.op != "remove" and self.value is None:
            raise ValueError(f"Operation '{self.op}' requires a value")
        return self


# -------------------------------------------------------------------------
# Accessor
# -------------------------------------------------------------------------


def _split_path(path: str) -> list[str]:
    if path in ("", "/"):
        return []
    if not path.startswith("/"):
        raise ValueError(f"Invalid directive path: {path!r}")
    return path.split("/")[1:]


def resolve(root: Directive, path: str) -> Node | None:
    """Resolves `path` to a directive, a list of same-named directives or None.

    - An unindexed intermediate segment with several matches selects the first.
    - An unindexed final segment with several matches returns all of them.
    - Descending through a missing directive or past a non-context directive
      returns None.
    """
    item: Node = root

    for segment in _split_path(path):
        found: Node | None
        if segment.isdigit():
            index = int(segment)
            if isinstance(item, list):
                found = item[index] if index < len(item) else None
            else:
                found = item if index == 0 else None
        else:
            if isinstance(item, list):
                item = item[0]
            matches = item.children(segment)
            if not matches:
                found = None
            elif len(matches) == 1:
                found = matches[0]
            else:
                found = matches

        if found is None:
            return None
        item = found

    return item


# -------------------------------------------------------------------------
# Patcher
# -------------------------------------------------------------------------


def _split_value(value: str) -> tuple[list[str], list[bool]]:
    args, quoted = [], []
    for match in _ARG_RX.finditer(value):
        single, double, bare = match.groups()
        if bare is not None:
            args.append(bare)
        elif single is not None:
            args.append(single.replace("\\'", "'"))
        else:
            args.append(double.replace('\\"', '"'))
        quoted.append(bare is None)
    return args, quoted


def split_args(value: str) -> list[str]:
    """Splits a directive value into arguments, honouring quotes."""
    return _split_value(value)[0]


def apply_operation(root: Directive, operation: PatchOperation) -> None:
    """Applies a single patch operation on the tree rooted at `root`.

    Raises:
        NginxConfPatchError: If the parent context does not exist (except for
            op `remove`, which is then a no-op).
    """
    parent_path, _, name = operation.path.rpartition("/")

    parent = resolve(root, parent_path)
    if isinstance(parent, list):
        parent = parent[0]

    if parent is None or parent.block is None:
        if operation.op == "remove":
            return
        raise NginxConfPatchError(
            f"Directive at {parent_path or '/'} does not exist", path=parent_path
        )

    if not name or name.isdigit():
        raise NginxConfPatchError(
            f"Path {operation.path} does not end with a directive name",
            path=operation.path,
        )

    _logger.debug("Applying %s on %s", operation.op, operation.path)

    if operation.op in ("remove", "set"):
        parent.block[:] = [d for d in parent.block if d.name != name]

    if operation.op == "default" and resolve(root, operation.path) is not None:
        return

    if operation.op != "remove":
        args, quoted = _split_value(operation.value or "")
        parent.block.append(Directive(name, args, quoted=quoted))


# -------------------------------------------------------------------------
# Editor
# -------------------------------------------------------------------------


def _dump_block(block: list[Directive], depth: int, last_line: int, out: list[str]) -> None:
    margin = " " * (_INDENT * depth)

    for d in block:
        if d.name == "#":
            text = f"#{d.comment or ''}"
            # Comment on the same line as the previous directive
            if out and d.line and d.line == last_line:
                out[-1] += " " + text
            else:
                out.append(margin + text)
            continue

        head = " ".join([d.name, *d.quoted_args()])
        if d.block is None:
            out.append(f"{margin}{head};")
        else:
            out.append(f"{margin}{head} {{")
            _dump_block(d.block, depth + 1, d.line, out)
            out.append(f"{margin}}}")
        last_line = d.line


class NginxConf:
    """Nginx configuration editor returned by parse_conf()."""

    def __init__(self, root: Directive) -> None:
        self.root = root

    def find(self, path: str) -> Node | None:
        """Returns the directive node(s) at the path, see resolve()."""
        return resolve(self.root, path)

    def get(self, path: str) -> str | list[str] | None:
        """Returns the value of the directive at the path.

        - If the directive is not declared, returns None.
        - If the path points to a context without arguments (e.g. `server`),
          returns an empty string.
        - If the directive is declared multiple times in the same context,
          returns a list of each declaration's value.
        """
        item = self.find(path)
        if item is None:
            return None
        if isinstance(item, list):
            return [d.value for d in item]
        return item.value

    def apply_patch(
        self, patch: Iterable[PatchOperation | Mapping[str, Any]]
    ) -> "NginxConf":
        """Applies the patch operations in order; returns self for chaining.

        There is no rollback: operations preceding a failed one stay applied.

        Raises:
            NginxConfPatchError: If some parent directive on the path does not exist.
        """
        for operation in patch:
            if not isinstance(operation, PatchOperation):
                operation = PatchOperation.model_validate(operation)
            apply_operation(self.root, operation)
        return self

    def dump(self) -> str:
        """Dumps the config back to string."""
        out: list[str] = []
        _dump_block(self.root.block or [], 0, 0, out)
        return "\n".join(out) + "\n" if out else ""

    def __str__(self) -> str:
        return self.dump()


# -------------------------------------------------------------------------
# Parser
# -------------------------------------------------------------------------


def _syntax_error(reason: str, line: int) -> NginxConfigError:
    return NginxConfigError(
        f"Failed to parse nginx config: {reason} (line {line})",
        config_key="config",
        context={"line": line},
    )


def _parse_block(tokens: Iterator[Token], nested: bool) -> list[Directive]:
    block: list[Directive] = []
    line = 0

    for token, line, quoted in tokens:
        if not quoted and token == "}":
            if nested:
                return block
            raise _syntax_error('unexpected "}"', line)

        if not quoted and token.startswith("#"):
            block.append(Directive("#", line=line, comment=token[1:]))
            continue

        if not quoted and token in (";", "{"):
            raise _syntax_error(f'unexpected "{token}"', line)

        directive = Directive(token, line=line)
        comments = []
        for token, line, quoted in tokens:
            if not quoted and token in (";", "{", "}"):
                break
            if not quoted and token.startswith("#"):
                comments.append(Directive("#", line=line, comment=token[1:]))
                continue
            directive.args.append(token)
            directive.quoted.append(quoted)
        else:
            raise _syntax_error('unexpected end of file, expecting ";" or "}"', line)

        if token == "}":
            raise _syntax_error(f'directive "{directive.name}" is not terminated by ";"', line)
        if token == "{":
            directive.block = _parse_block(tokens, nested=True)

        block.append(directive)
        block.extend(comments)

    if nested:
        raise _syntax_error('unexpected end of file, expecting "}"', line)
    return block


def parse_conf(source: str) -> NginxConf:
    """Parses the given nginx config.

    Includes are not followed and directives are not validated.

    Raises:
        NginxConfigError: If the source is not syntactically valid.
    """
    # crossplane reads from a file only
    fd, tmp_path = tempfile.mkstemp(prefix="nginx-conf-", suffix=".conf")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(source if source.endswith("\n") else source + "\n")
        block = _parse_block(iter(crossplane.lex(tmp_path)), nested=False)
    except NgxParserBaseException as e:
        raise _syntax_error(e.strerror, e.lineno) from e
    finally:
        os.unlink(tmp_path)

    return NginxConf(Directive("", block=block))
