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

"""LIFO registry of best-effort teardown actions."""

import asyncio
import atexit
import inspect
import logging
from typing import Any, Awaitable, Callable, Union

__all__ = ["CleanupAction", "CleanupStack"]

CleanupAction = Callable[[], Union[Awaitable[Any], None]]

_logger = logging.getLogger("nginx_testing.cleanup")


class CleanupStack:
    """Runs registered actions in reverse order of registration.

    Failing actions are logged and skipped, so the rest still runs.

    Args:
        register_exit_hook: If True, the stack registers itself as an `atexit`
            handler. The handler is unregistered as soon as run_all() is
            called manually.
        logger: Logger for swallowed errors.
    """

    def __init__(
        self,
        *,
        register_exit_hook: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._actions: list[CleanupAction] = []
        self._logger = logger or _logger
        self._exit_hook_registered = False

        if register_exit_hook:
            atexit.register(self._run_at_exit)
            self._exit_hook_registered = True

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def exit_hook_registered(self) -> bool:
        return self._exit_hook_registered

    def register(self, action: CleanupAction) -> None:
        self._actions.append(action)

    async def run_all(self) -> None:
        self._unregister_exit_hook()

        while self._actions:
            action = self._actions.pop()
            try:
                result = action()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error("Cleanup action %r failed: %s", action, e)

    def _unregister_exit_hook(self) -> None:
        if self._exit_hook_registered:
            atexit.unregister(self._run_at_exit)
            self._exit_hook_registered = False

    def _run_at_exit(self) -> None:
        if not self._actions:
            return
        try:
            asyncio.run(self.run_all())
        except RuntimeError as e:
            self._logger.error("Failed to run cleanup at exit: %s", e)
