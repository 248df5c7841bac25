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
nginx-testing Exceptions.

Defines the hierarchy of errors raised by the nginx runner and config editor.
"""

from typing import Any, Dict, Optional


class NginxTestingError(Exception):
    """Base class for all nginx-testing errors.

    Attributes:
        message: A human-readable error message.
        context: Optional dictionary containing debugging metadata.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} (context: {self.context})"
        return self.message


class NginxConfigError(NginxTestingError):
    """Raised when the runner options or the nginx config text are invalid.

    Attributes:
        config_key: The name of the option that caused the error.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if config_key:
            ctx["config_key"] = config_key
        super().__init__(message, context=ctx)
        self.config_key = config_key


class NginxConfPatchError(NginxTestingError, LookupError):
    """Raised when a patch operation cannot be applied on the config tree.

    Attributes:
        path: The directive path that could not be resolved.
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class NginxProcessError(NginxTestingError):
    """Raised when the nginx binary cannot be executed or exits unexpectedly.

    Includes exit code and stderr if the process has terminated.
    """

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        binary: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if exit_code is not None:
            ctx["exit_code"] = exit_code
        if stderr:
            # Last 500 chars are enough to see what went wrong
            ctx["stderr"] = stderr.strip()[-500:]

        super().__init__(message, context=ctx)
        self.exit_code = exit_code
        self.stderr = stderr
        self.binary = binary


class NginxStartError(NginxTestingError):
    """Raised when nginx was spawned but did not become ready.

    Attributes:
        phase: The start-up phase where the failure occurred (e.g. 'readiness').
    """

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        underlying_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = context or {}
        if phase:
            ctx["start_phase"] = phase
        if underlying_error:
            ctx["underlying_error"] = str(underlying_error)

        super().__init__(message, context=ctx)
        self.phase = phase
        self.underlying_error = underlying_error


class NginxStateError(NginxTestingError):
    """Raised when an operation is not allowed in the server's current state."""
