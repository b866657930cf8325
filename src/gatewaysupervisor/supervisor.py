"""Gateway child-process supervision.

The supervisor owns at most one live gateway child. Whether the gateway is
running is decided by a TCP probe of its loopback port rather than by the
handle alone, so an orphan left by a previous supervisor instance is detected
and never duplicated.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Set

from .commands import GatewayCli
from .config import SupervisorConfig


logger = logging.getLogger(__name__)
gateway_output_logger = logging.getLogger("gatewaysupervisor.gateway")


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    RESTARTING = "restarting"


class RestartRequiredFlag:
    """Set when saved credentials changed the environment of an onboarded system."""

    def __init__(self) -> None:
        self._value = False

    @property
    def value(self) -> bool:
        return self._value

    def set(self) -> None:
        self._value = True

    def clear(self) -> None:
        self._value = False

    def __bool__(self) -> bool:
        return self._value


async def _spawn_gateway(argv: Sequence[str], env: Mapping[str, str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env),
    )


class GatewaySupervisor:
    def __init__(
        self,
        *,
        config: SupervisorConfig,
        cli: GatewayCli,
        env_factory: Callable[[], Mapping[str, str]],
        is_onboarded: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._config = config
        self._cli = cli
        self._env_factory = env_factory
        self._is_onboarded = is_onboarded or config.is_onboarded

        self._child: Optional[asyncio.subprocess.Process] = None
        self._relaunch_task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    # ----------------------------
    # Observation
    # ----------------------------

    async def is_running(self) -> bool:
        host, port = self._config.gateway_host, int(self._config.gateway_port)
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self._config.probe_timeout_s,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        except Exception as e:
            logger.debug("Health probe error: %s", e)
            return False

        # Connected: anything that goes wrong while closing does not change the answer.
        try:
            writer.close()
            await writer.wait_closed()
        except Exception:
            pass
        return True

    def _has_live_child(self) -> bool:
        return self._child is not None and self._child.returncode is None

    @property
    def state(self) -> SupervisorState:
        if self._relaunch_task is not None and not self._relaunch_task.done():
            return SupervisorState.RESTARTING
        if self._has_live_child():
            return SupervisorState.RUNNING
        return SupervisorState.STOPPED

    async def current_state(self) -> SupervisorState:
        st = self.state
        if st is SupervisorState.STOPPED and await self.is_running():
            return SupervisorState.RUNNING
        return st

    # ----------------------------
    # Lifecycle
    # ----------------------------

    async def start(self) -> None:
        if not self._is_onboarded():
            logger.info("Not onboarded yet, skipping gateway start")
            return
        if await self.is_running():
            logger.info("Gateway already running, skipping start")
            return
        logger.info("Starting gateway...")
        await self._launch()

    async def _launch(self) -> None:
        if self._has_live_child():
            logger.info("Managed gateway process already running, skipping launch")
            return

        argv = [self._config.gateway_bin, "gateway", "run"]
        try:
            proc = await _spawn_gateway(argv, self._env_factory())
        except OSError as e:
            logger.error("Failed to launch gateway (%s): %s", " ".join(argv), e)
            return

        self._child = proc
        logger.info("Gateway launched (pid %s)", getattr(proc, "pid", "?"))
        if proc.stdout is not None:
            self._track(self._pump(proc.stdout, logging.INFO))
        if proc.stderr is not None:
            self._track(self._pump(proc.stderr, logging.WARNING))
        self._track(self._watch_exit(proc))

    def _track(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump(self, stream: asyncio.StreamReader, level: int) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            gateway_output_logger.log(level, "%s", line.decode("utf-8", errors="replace").rstrip())

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        logger.info("Gateway process exited with code %s", code)
        if self._child is proc:
            self._child = None

    async def restart(self, reload_env: Callable[[], Any]) -> None:
        """Reload credentials, stop the current gateway, reinstall, then relaunch.

        Returns once the relaunch is scheduled; the relaunch itself waits (bounded)
        for the old gateway to release its port.
        """
        reload_env()
        self._cancel_relaunch()

        child = self._child
        if child is not None and child.returncode is None:
            logger.info("Stopping managed gateway process...")
            try:
                child.send_signal(signal.SIGTERM)
                self._child = None
            except ProcessLookupError as e:
                logger.warning("Failed to stop managed gateway process: %s", e)
                await self._cli.stop()
        else:
            await self._cli.stop()

        # Always attempted once; a failed reinstall must not block the relaunch.
        await self._cli.install(force=True)

        self._relaunch_task = asyncio.get_running_loop().create_task(self._relaunch_when_ready())

    def _cancel_relaunch(self) -> None:
        task, self._relaunch_task = self._relaunch_task, None
        if task is not None and not task.done():
            logger.info("Superseding pending gateway relaunch")
            task.cancel()

    async def _relaunch_when_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.restart_wait_s
        while loop.time() < deadline:
            if not await self.is_running():
                break
            await asyncio.sleep(self._config.restart_poll_s)
        logger.info("Starting gateway with refreshed environment...")
        # A superseding restart may cancel the wait above, never a spawn in progress.
        await asyncio.shield(self.start())

    async def wait_for_relaunch(self) -> None:
        task = self._relaunch_task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    # ----------------------------
    # Exit
    # ----------------------------

    def stop_gateway_on_exit(self) -> None:
        """Blocking stop used while the supervisor itself is exiting."""
        child = self._child
        if child is not None and child.returncode is None:
            try:
                child.terminate()
            except ProcessLookupError:
                pass
        self._child = None
        self._cli.stop_sync()

    async def shutdown(self) -> None:
        self._cancel_relaunch()
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Supervisor task failed during shutdown", exc_info=True)
