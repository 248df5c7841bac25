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
Nginx Runner.

Starts nginx with the given config, waits until it responds to HTTP and tears
everything down (process, log files, temporary config and work dir) on stop.

Example:
    async with NginxServer(config_path="nginx.conf") as nginx:
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"http://127.0.0.1:{nginx.port}/")
        print(await nginx.read_access_log())
"""

import asyncio
import contextlib
import enum
import logging
import os
import shutil
import signal
import sys
import tempfile
import time
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .binary import BinaryResolver, resolve_binary
from .cleanup import CleanupStack
from .exceptions import (
    NginxConfigError,
    NginxProcessError,
    NginxStartError,
    NginxStateError,
)
from .logs import LogBuffer, LogTailer, pump_stream
from .ports import get_free_ports
from .probe import wait_for_http_port_open
from .settings import NginxTestingSettings, get_settings
from .templating import (
    ConfigParams,
    adjust_config,
    count_needed_ports,
    is_master_process_enabled,
)
from .version_info import NginxVersionInfo, nginx_version_info

__all__ = ["NginxOptions", "NginxServer", "ServerState", "start_nginx"]

_ERROR_LOG_MODES = ("buffer", "ignore", "inherit")
_ACCESS_LOG_MODES = ("buffer", "ignore")
_STDERR_DRAIN_TIMEOUT_SEC = 1.0
_REAP_POLL_INTERVAL_SEC = 0.05

_logger = logging.getLogger("nginx_testing")

# -------------------------------------------------------------------------
# Type Definitions
# -------------------------------------------------------------------------


class ServerState(str, enum.Enum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    RUNNING = "running"
    RELOADING = "reloading"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    FAILED = "failed"


def _check_sink(value: Any, modes: tuple[str, ...], name: str) -> Any:
    if isinstance(value, str):
        if value not in modes:
            raise ValueError(f"{name} must be one of {modes} or a writable, got {value!r}")
        return value
    if not callable(getattr(value, "write", None)):
        raise ValueError(f"{name} must be one of {modes} or a writable")
    return value


class NginxOptions(BaseModel):
    """Options for NginxServer.

    Attributes:
        bin_path: Name or path of the nginx binary. Ignored if `version` is given.
        version: Version constraint passed to the binary resolver.
        config: Nginx configuration text; may contain placeholders
            (see nginx_testing.templating).
        config_path: Path of the nginx configuration file. The processed config
            is written to `.<filename>~` in the same directory.
        bind_address: Address to find free ports on and for `__ADDRESS__`.
        ports: Ports for `__PORT__`... placeholders, used without checking.
        preferred_ports: Ports to try before random ones; unavailable are skipped.
        work_dir: Prefix directory for nginx; a temporary one if not given.
        error_log: 'buffer', 'ignore', 'inherit' or a binary writable for stderr.
        access_log: 'buffer', 'ignore' or a binary writable for `access.log`.
        start_timeout: Seconds to wait for nginx to respond after the start.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    bin_path: str | None = None
    version: str | None = None
    config: str | None = None
    config_path: str | None = None
    bind_address: str | None = None
    ports: list[int] = Field(default_factory=list)
    preferred_ports: list[int] = Field(default_factory=list)
    work_dir: str | None = None
    error_log: Any = "buffer"
    access_log: Any = "buffer"
    start_timeout: float | None = None

    @field_validator("error_log")
    @classmethod
    def _check_error_log(cls, value: Any) -> Any:
        return _check_sink(value, _ERROR_LOG_MODES, "error_log")

    @field_validator("access_log")
    @classmethod
    def _check_access_log(cls, value: Any) -> Any:
        return _check_sink(value, _ACCESS_LOG_MODES, "access_log")


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


def _read_config_file(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise NginxConfigError(
            f"Failed to read config file {path}: {e}", config_key="config_path"
        ) from e


def _load_config(config: str | None, config_path: str | None) -> str | None:
    if config is not None:
        return config
    if config_path is not None:
        return _read_config_file(config_path)
    return None


def _temp_config_path(path: str) -> str:
    path = os.path.abspath(path)
    return os.path.join(os.path.dirname(path), f".{os.path.basename(path)}~")


def _create_temp_dir(base: str | None) -> str:
    if base:
        os.makedirs(base, exist_ok=True)
    return tempfile.mkdtemp(prefix="nginx-testing-", dir=base)


def _remove_file(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)


def _reap(pid: int) -> bool:
    """Returns True if the child process `pid` is gone."""
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        # Already reaped elsewhere
        return True
    return reaped == pid


async def _terminate_pid(pid: int, timeout: float) -> None:
    """Sends SIGTERM to `pid` and SIGKILL if it's still alive after `timeout`.

    Works on the bare pid, for when the process handle is bound to a closed
    event loop.
    """
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if _reap(pid):
                return
            await asyncio.sleep(_REAP_POLL_INTERVAL_SEC)
        _logger.warning("Nginx (%d) did not exit on signal %d", pid, sig)


# -------------------------------------------------------------------------
# Runner
# -------------------------------------------------------------------------


class NginxServer:
    """Nginx server started for testing.

    The instance is both the runner and the handle to the running nginx.
    After stop() it cannot be used anymore.

    Example:
        nginx = await NginxServer(config=config).start()
        try:
            ...
        finally:
            await nginx.stop()
    """

    def __init__(
        self,
        options: NginxOptions | None = None,
        *,
        binary_resolver: BinaryResolver | None = None,
        logger: logging.Logger | None = None,
        settings: NginxTestingSettings | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the runner; nothing is started until start().

        Args:
            options: Runner options; alternatively pass them as keyword arguments.
            binary_resolver: Callable resolving `version` to a binary path.
            logger: Logger to use instead of the `nginx_testing` logger.
            settings: Defaults for options not given (read from environment
                if not provided).

        Raises:
            NginxConfigError: If the options are invalid.
        """
        if options is not None and kwargs:
            raise TypeError("Pass either options or keyword arguments, not both")
        if options is None:
            try:
                options = NginxOptions(**kwargs)
            except ValidationError as e:
                raise NginxConfigError(f"Invalid nginx options: {e}") from e

        self._options = options
        self._resolver = binary_resolver
        self._logger = logger or _logger
        self._settings = settings or get_settings()

        # Runtime state
        self._state = ServerState.UNSTARTED
        self._lock = asyncio.Lock()
        self._cleanup: CleanupStack | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._error_log_buffer: LogBuffer | None = None
        self._access_log_buffer: LogBuffer | None = None
        self._access_log_tail: LogTailer | None = None
        self._bin_path: str | None = None
        self._version_info: NginxVersionInfo | None = None
        self._params: ConfigParams | None = None
        self._config: str = ""

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def config(self) -> str:
        """The current (processed) nginx configuration."""
        self._require_handle()
        return self._config

    @property
    def config_path(self) -> str:
        """Path of the processed config file nginx was started with."""
        return self._require_handle().config_path

    @property
    def pid(self) -> int:
        """PID of the nginx process."""
        self._require_handle()
        if self._process is None:
            raise NginxStateError("nginx process is not running")
        return self._process.pid

    @property
    def port(self) -> int:
        """The first allocated port, i.e. the one nginx should listen on."""
        return self._require_handle().ports[0]

    @property
    def ports(self) -> tuple[int, ...]:
        return tuple(self._require_handle().ports)

    @property
    def work_dir(self) -> str:
        """Path of the nginx's working directory (prefix)."""
        return self._require_handle().work_dir

    @property
    def bin_path(self) -> str | None:
        return self._bin_path

    @property
    def version_info(self) -> NginxVersionInfo | None:
        return self._version_info

    async def read_access_log(self) -> str:
        """Reads new messages from the access log since the last call.

        Raises:
            NginxStateError: If option access_log is not 'buffer'.
        """
        self._require_handle()
        if self._access_log_tail is None or self._access_log_buffer is None:
            raise NginxStateError(
                "read_access_log() is available only when the option access_log is 'buffer'"
            )
        await self._access_log_tail.poll()
        return self._access_log_buffer.read()

    async def read_error_log(self) -> str:
        """Reads new messages from the error log (stderr) since the last call.

        Raises:
            NginxStateError: If option error_log is not 'buffer'.
        """
        self._require_handle()
        if self._error_log_buffer is None:
            raise NginxStateError(
                "read_error_log() is available only when the option error_log is 'buffer'"
            )
        # Let the stderr reader catch up
        await asyncio.sleep(0)
        return self._error_log_buffer.read()

    # -------------------------------------------------------------------------
    # Async Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> "NginxServer":
        return await self.start()

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: Any,
    ) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> "NginxServer":
        """Starts nginx and waits until it responds.

        On failure, everything acquired so far is cleaned up before raising.

        Raises:
            NginxConfigError: If the options are invalid or no ports are needed.
            NginxProcessError: If nginx cannot be executed or exits right away.
            NginxStartError: If nginx does not respond within start_timeout.
        """
        async with self._lock:
            if self._state is not ServerState.UNSTARTED:
                raise NginxStateError(f"nginx cannot be started when {self._state.value}")

            opts = self._options
            config = _load_config(opts.config, opts.config_path)
            if config is None:
                raise NginxConfigError(
                    "Either config or config_path must be provided", config_key="config"
                )

            ports_count = count_needed_ports(config)
            if ports_count == 0 and not opts.ports and not opts.preferred_ports:
                raise NginxConfigError(
                    "No __PORT__ placeholder found in nginx config and options "
                    "ports and preferred_ports are empty",
                    config_key="ports",
                )

            self._state = ServerState.STARTING
            self._loop = asyncio.get_running_loop()
            self._cleanup = CleanupStack(register_exit_hook=True, logger=self._logger)
            try:
                await self._start(config, max(ports_count, 1))
            except Exception:
                self._state = ServerState.FAILED
                cleanup, self._cleanup = self._cleanup, None
                await cleanup.run_all()
                raise

            self._state = ServerState.RUNNING
            return self

    async def stop(self) -> None:
        """Stops nginx and cleans up temporary files and directories.

        Safe to call multiple times; never raises.
        """
        async with self._lock:
            cleanup, self._cleanup = self._cleanup, None
            if cleanup is None:
                return
            self._logger.debug("Stopping nginx and cleaning up")
            await cleanup.run_all()
            self._state = ServerState.STOPPED

    async def restart(
        self, config: str | None = None, config_path: str | None = None
    ) -> None:
        """Restarts nginx, optionally with a new configuration.

        The new process uses the same ports, work dir and log files.

        Raises:
            NginxConfigError: If both config and config_path are given.
        """
        async with self._lock:
            self._require_handle()
            new_config = self._load_new_config(config, config_path)

            self._state = ServerState.RESTARTING
            try:
                self._logger.info("Restarting nginx")
                await self._stop_process()
                if new_config is not None:
                    self._apply_config(new_config)

                self._logger.debug("Starting new nginx process")
                await self._start_process()
            except Exception:
                self._state = ServerState.FAILED
                raise
            self._state = ServerState.RUNNING

    async def reload(
        self, config: str | None = None, config_path: str | None = None
    ) -> None:
        """Reloads nginx using SIGHUP, optionally with a new configuration.

        Nginx can be reloaded only when running with the master process, i.e.
        with `master_process on` in the config. Prefer restart() where possible.

        Raises:
            NginxStateError: If master_process is off or running on Windows.
            NginxConfigError: If both config and config_path are given.
        """
        if sys.platform == "win32":
            raise NginxStateError("Reloading nginx is not supported on Windows")

        async with self._lock:
            self._require_handle()
            if not is_master_process_enabled(self._config):
                raise NginxStateError("Nginx cannot be reloaded when master_process is off")

            process = self._process
            if process is None or process.returncode is not None:
                raise NginxProcessError(
                    "Nginx process is not running",
                    exit_code=process.returncode if process else None,
                    binary=self._bin_path,
                )
            new_config = self._load_new_config(config, config_path)

            self._state = ServerState.RELOADING
            try:
                self._logger.info("Reloading nginx")
                if new_config is not None:
                    self._apply_config(new_config)

                self._logger.debug("Sending SIGHUP to nginx process")
                process.send_signal(signal.SIGHUP)
            except Exception:
                self._state = ServerState.FAILED
                raise
            self._state = ServerState.RUNNING

    # -------------------------------------------------------------------------
    # Start-up (Private)
    # -------------------------------------------------------------------------

    async def _start(self, config: str, ports_count: int) -> None:
        opts = self._options
        settings = self._settings
        cleanup = self._cleanup
        assert cleanup is not None

        bind_address = opts.bind_address or settings.bind_address

        if opts.work_dir:
            work_dir = os.path.abspath(opts.work_dir)
            os.makedirs(work_dir, exist_ok=True)
        else:
            work_dir = _create_temp_dir(settings.temp_dir)
            cleanup.register(lambda: shutil.rmtree(work_dir, ignore_errors=True))

        self._bin_path = await resolve_binary(
            opts.bin_path, opts.version, self._resolver, settings
        )
        self._version_info = await nginx_version_info(
            self._bin_path, timeout=settings.version_timeout
        )

        ports = list(opts.ports)
        if len(ports) < ports_count:
            try:
                ports += await get_free_ports(
                    bind_address, ports_count - len(ports), opts.preferred_ports
                )
            except OSError as e:
                raise NginxConfigError(
                    f"Cannot bind to {bind_address}: {e}", config_key="bind_address"
                ) from e

        config_path = (
            _temp_config_path(opts.config_path)
            if opts.config_path
            else os.path.join(work_dir, "nginx.conf")
        )
        self._params = ConfigParams(
            bind_address=bind_address,
            config_path=config_path,
            ports=ports,
            work_dir=work_dir,
            modules=dict(self._version_info.modules),
        )
        cleanup.register(lambda: _remove_file(config_path))
        self._apply_config(config)

        self._logger.info(
            "Starting nginx %s on port(s): %s",
            self._version_info.version,
            ", ".join(str(p) for p in ports),
        )
        if opts.error_log == "buffer":
            self._error_log_buffer = LogBuffer()
        cleanup.register(self._stop_process)
        await self._start_process()

        if opts.access_log != "ignore":
            sink = opts.access_log
            if sink == "buffer":
                sink = self._access_log_buffer = LogBuffer()
            tail = LogTailer(
                os.path.join(work_dir, "access.log"),
                sink,
                settings.log_poll_interval,
                logger=self._logger,
            )
            tail.start()
            cleanup.register(tail.stop)
            self._access_log_tail = tail

    async def _start_process(self) -> None:
        """Spawns nginx and checks that it's running and responding."""
        params = self._params
        assert params is not None and self._bin_path is not None
        error_log = self._options.error_log

        if error_log == "ignore":
            stderr: Any = asyncio.subprocess.DEVNULL
        elif error_log == "inherit":
            stderr = None
        else:
            stderr = asyncio.subprocess.PIPE

        cmd = [self._bin_path, "-c", params.config_path, "-p", params.work_dir]
        self._logger.debug("Spawning nginx: %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=stderr,
            )
        except OSError as e:
            raise NginxProcessError(
                f"Failed to execute nginx {self._bin_path}: {e}", binary=self._bin_path
            ) from e

        self._process = process
        self._logger.debug("Nginx started with PID %d", process.pid)

        if process.stderr is not None:
            sink = error_log if self._error_log_buffer is None else self._error_log_buffer
            self._stderr_task = asyncio.create_task(pump_stream(process.stderr, sink))

        # Nginx exits almost immediately when it cannot run (e.g. invalid config)
        exited = asyncio.ensure_future(process.wait())
        done, _ = await asyncio.wait({exited}, timeout=self._settings.process_error_grace)
        if not done:
            exited.cancel()
        else:
            raise await self._process_exited_error()

        await self._check_ready()

    async def _check_ready(self) -> None:
        params = self._params
        assert params is not None
        timeout = self._options.start_timeout
        if timeout is None:
            timeout = self._settings.start_timeout
        host, port = params.bind_address, params.ports[0]
        process = self._process
        assert process is not None

        probe = asyncio.ensure_future(
            wait_for_http_port_open(
                host,
                port,
                timeout,
                path=self._settings.health_check_path,
                logger=self._logger,
            )
        )
        exited = asyncio.ensure_future(process.wait())
        await asyncio.wait({probe, exited}, return_when=asyncio.FIRST_COMPLETED)
        exited.cancel()

        # Nginx died while we were waiting for it
        if not probe.done():
            probe.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await probe
            raise await self._process_exited_error()

        try:
            ready = probe.result()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self._dump_error_log()
            raise NginxStartError(
                f"Failed to check nginx on {host}:{port}: {e}",
                phase="readiness",
                underlying_error=e,
            ) from e

        if ready:
            return
        if process.returncode is not None:
            raise await self._process_exited_error()

        stderr = self._dump_error_log()
        raise NginxStartError(
            f"Failed to start nginx, no response on port {port}",
            phase="readiness",
            context={"stderr": stderr.strip()[-500:]} if stderr else None,
        )

    async def _process_exited_error(self) -> NginxProcessError:
        assert self._process is not None
        await self._drain_stderr()
        stderr = self._dump_error_log()
        return NginxProcessError(
            f"Nginx {self._bin_path} exited with code {self._process.returncode}",
            exit_code=self._process.returncode,
            stderr=stderr,
            binary=self._bin_path,
        )

    def _dump_error_log(self) -> str:
        if self._error_log_buffer is None:
            return ""
        msg = self._error_log_buffer.read()
        if msg:
            self._logger.error("%s", msg)
        return msg

    # -------------------------------------------------------------------------
    # Config (Private)
    # -------------------------------------------------------------------------

    def _load_new_config(self, config: str | None, config_path: str | None) -> str | None:
        if config is not None and config_path is not None:
            raise NginxConfigError(
                "Options config and config_path are mutually exclusive",
                config_key="config",
            )
        return _load_config(config, config_path)

    def _apply_config(self, config: str) -> None:
        params = self._params
        assert params is not None
        self._config = adjust_config(config, params)

        self._logger.debug(
            "Writing config to %s:\n-----BEGIN CONFIG-----\n%s\n-----END CONFIG-----",
            params.config_path,
            self._config,
        )
        with open(params.config_path, "w", encoding="utf-8") as f:
            f.write(self._config)

    # -------------------------------------------------------------------------
    # Teardown (Private)
    # -------------------------------------------------------------------------

    async def _stop_process(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            self._logger.debug("Stopping nginx (%d)", process.pid)
            if self._loop is asyncio.get_running_loop():
                await self._terminate(process)
            else:
                # Started in a loop that is gone (e.g. cleanup at exit)
                await _terminate_pid(process.pid, self._settings.stop_timeout)

        await self._drain_stderr()
        self._stderr_task = None

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=self._settings.stop_timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        except ProcessLookupError:
            pass

    async def _drain_stderr(self) -> None:
        task = self._stderr_task
        if task is None or task.done():
            return
        if self._loop is asyncio.get_running_loop():
            # The reader finishes on EOF, i.e. once the process is gone
            await asyncio.wait({task}, timeout=_STDERR_DRAIN_TIMEOUT_SEC)
        task.cancel()

    def _require_handle(self) -> ConfigParams:
        if (
            self._cleanup is None
            or self._params is None
            or self._state in (ServerState.UNSTARTED, ServerState.STARTING)
        ):
            raise NginxStateError(f"Nginx is not running (state: {self._state.value})")
        return self._params


async def start_nginx(options: NginxOptions | None = None, **kwargs: Any) -> NginxServer:
    """Starts nginx with the given options; see NginxServer and NginxOptions.

    Example:
        nginx = await start_nginx(config_path="./nginx.conf")
        try:
            ...
        finally:
            await nginx.stop()
    """
    return await NginxServer(options, **kwargs).start()
