"""Bring up, and later tear down, the checking service.

Strategies are tried once, in order: an instance already answering on the
configured port, a local executable, then each configured container runtime.
The strategy that succeeds is recorded and alone decides how teardown works.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeAlias

from marginalia.config import ServiceSettings
from marginalia.exceptions import StartupExhausted
from marginalia.invariants import never

logger = logging.getLogger(__name__)

ProbeFn: TypeAlias = Callable[[], Awaitable[bool]]

_POLL_INTERVAL_SECONDS = 0.5
_STOP_TIMEOUT_SECONDS = 10.0


class ServiceState(str, Enum):
    PROBING = "probing"
    LOCALLY_SPAWNING = "locally_spawning"
    CONTAINER_TRYING = "container_trying"
    RUNNING = "running"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class AlreadyRunning:
    pass


@dataclass(frozen=True)
class LocalProcess:
    process: subprocess.Popen


@dataclass(frozen=True)
class Container:
    runtime: str
    process: subprocess.Popen


ServiceHandle: TypeAlias = AlreadyRunning | LocalProcess | Container


def local_command(settings: ServiceSettings) -> list[str]:
    return [settings.executable, "--http", "--port", str(settings.port)]


def container_run_command(settings: ServiceSettings, runtime: str) -> list[str]:
    return [
        runtime,
        "run",
        f"--name={settings.container_name}",
        f"--publish={settings.port}:{settings.container_port}",
        settings.container_image,
    ]


def container_remove_command(settings: ServiceSettings, runtime: str) -> list[str]:
    return [runtime, "rm", "-f", settings.container_name]


class ServiceManager:
    def __init__(
        self,
        settings: ServiceSettings,
        probe_fn: ProbeFn,
        *,
        process_factory: Callable[..., subprocess.Popen] = subprocess.Popen,
        run_fn: Callable[..., object] = subprocess.run,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._probe = probe_fn
        self._process_factory = process_factory
        self._run = run_fn
        self._sleep = sleep_fn
        self._clock = clock_fn
        self.state = ServiceState.PROBING
        self.container_index = 0
        self.handle: ServiceHandle | None = None
        self.attempts: list[str] = []

    async def start(self) -> ServiceHandle:
        if self.handle is not None or self.state is not ServiceState.PROBING:
            never("checking service already acquired", state=self.state.value)
        if await self._probe():
            logger.info(
                "checking service already running on %s:%s",
                self.settings.host,
                self.settings.port,
            )
            return self._running(AlreadyRunning())
        self.attempts.append("no running instance answered the probe")

        self.state = ServiceState.LOCALLY_SPAWNING
        process = await self._spawn_local()
        if process is not None:
            return self._running(LocalProcess(process))

        self.state = ServiceState.CONTAINER_TRYING
        runtimes = self.settings.container_runtimes
        while self.container_index < len(runtimes):
            runtime = runtimes[self.container_index]
            process = await self._spawn_container(runtime)
            if process is not None:
                return self._running(Container(runtime, process))
            self.container_index += 1

        self.state = ServiceState.FAILED
        raise StartupExhausted(tuple(self.attempts))

    def _running(self, handle: ServiceHandle) -> ServiceHandle:
        self.handle = handle
        self.state = ServiceState.RUNNING
        return handle

    def _spawn(self, command: list[str]) -> subprocess.Popen:
        return self._process_factory(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

    async def _spawn_local(self) -> subprocess.Popen | None:
        command = local_command(self.settings)
        try:
            process = self._spawn(command)
        except FileNotFoundError:
            logger.info("%s not found on PATH; trying containers", self.settings.executable)
            self.attempts.append(f"{self.settings.executable}: not found")
            return None
        except OSError as exc:
            logger.warning(
                "could not start %s (%s); trying containers", self.settings.executable, exc
            )
            self.attempts.append(f"{self.settings.executable}: {exc}")
            return None
        if await self._wait_ready(process):
            logger.info("started %s (pid %s)", self.settings.executable, process.pid)
            return process
        self.attempts.append(f"{self.settings.executable}: service never became ready")
        await asyncio.to_thread(_stop_process, process)
        return None

    async def _spawn_container(self, runtime: str) -> subprocess.Popen | None:
        """Run the service container with ``runtime``.

        A container that exits at once usually means one left behind by an
        unclean shutdown still holds the name. It is removed and the same
        runtime gets one more run.
        """
        command = container_run_command(self.settings, runtime)
        for retried in (False, True):
            try:
                process = self._spawn(command)
            except FileNotFoundError:
                logger.info("container runtime %s not found", runtime)
                self.attempts.append(f"{runtime}: not found")
                return None
            except OSError as exc:
                logger.warning("could not run container with %s: %s", runtime, exc)
                self.attempts.append(f"{runtime}: {exc}")
                return None
            if await self._wait_ready(process):
                logger.info(
                    "started container %s with %s", self.settings.container_name, runtime
                )
                return process
            exited = process.poll() is not None
            if exited:
                self.attempts.append(f"{runtime}: container exited with code {process.returncode}")
            else:
                self.attempts.append(f"{runtime}: container never became ready")
            await asyncio.to_thread(_stop_process, process)
            await asyncio.to_thread(self._remove_container, runtime)
            if not exited or retried:
                return None
            logger.info(
                "retrying %s after removing container %s", runtime, self.settings.container_name
            )
        return None

    async def _wait_ready(self, process: subprocess.Popen) -> bool:
        deadline = self._clock() + self.settings.startup_timeout_seconds
        while True:
            if process.poll() is not None:
                logger.warning("service process exited with code %s", process.returncode)
                return False
            if await self._probe():
                return True
            if self._clock() >= deadline:
                logger.warning(
                    "service not ready after %.1fs", self.settings.startup_timeout_seconds
                )
                return False
            await self._sleep(_POLL_INTERVAL_SECONDS)

    def _remove_container(self, runtime: str) -> None:
        command = container_remove_command(self.settings, runtime)
        try:
            completed = self._run(
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                check=False,
                timeout=_STOP_TIMEOUT_SECONDS,
            )
        except FileNotFoundError:
            logger.error("cannot remove container: %s not found", runtime)
            return
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("removing container with %s failed: %s", runtime, exc)
            return
        returncode = getattr(completed, "returncode", 0)
        if returncode:
            stderr = getattr(completed, "stderr", b"") or b""
            detail = stderr.decode("utf-8", errors="replace").strip()
            logger.error(
                "%s exited with %s: %s", " ".join(command), returncode, detail
            )

    def close(self) -> None:
        """Release whatever :meth:`start` acquired. Safe to call more than once."""
        if self.state is ServiceState.CLOSED:
            return
        handle = self.handle
        self.state = ServiceState.CLOSED
        if handle is None:
            return
        if isinstance(handle, AlreadyRunning):
            logger.info("checking service was already running; leaving it up")
        elif isinstance(handle, LocalProcess):
            logger.info("stopping %s", self.settings.executable)
            _stop_process(handle.process)
        elif isinstance(handle, Container):
            logger.info("removing container %s", self.settings.container_name)
            self._remove_container(handle.runtime)
            _stop_process(handle.process)
        else:
            never("unknown service handle", handle=type(handle).__name__)

    async def __aenter__(self) -> "ServiceManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


def _stop_process(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=_STOP_TIMEOUT_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait(timeout=_STOP_TIMEOUT_SECONDS)
