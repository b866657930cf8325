from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence


logger = logging.getLogger(__name__)

_TIMEOUT_EXIT_CODE = 124
_LOG_TRUNCATE = 200
# Flags whose following argument is a secret.
_SECRET_FLAGS = frozenset({"--token", "--bot-token", "--api-key"})


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    stdout: str = ""
    stderr: str = ""
    code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def error_text(self) -> str:
        return (self.stderr or self.stdout or "").strip()[:_LOG_TRUNCATE]


def redact_args(args: Sequence[str]) -> List[str]:
    out: List[str] = []
    hide_next = False
    for a in args:
        if hide_next:
            out.append("***")
            hide_next = False
            continue
        out.append(str(a))
        if str(a) in _SECRET_FLAGS:
            hide_next = True
    return out


def _decode(raw: Optional[bytes]) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace").strip()


class GatewayCli:
    """The external gateway CLI surface, invoked with a fixed timeout.

    Failures never raise: they come back as `CommandResult(ok=False)` and are
    logged with truncated output.
    """

    def __init__(self, *, binary: str, env_factory: Callable[[], Mapping[str, str]], timeout_s: float = 15.0) -> None:
        self._binary = str(binary)
        self._env_factory = env_factory
        self._timeout_s = float(timeout_s)

    @property
    def binary(self) -> str:
        return self._binary

    def _log_start(self, args: Sequence[str]) -> None:
        logger.info("Running: %s %s", self._binary, " ".join(redact_args(args)))

    def _log_result(self, args: Sequence[str], result: CommandResult) -> None:
        label = " ".join(redact_args(args[:2]))
        if result.ok:
            if result.stdout:
                logger.info("%s: %s", label, result.stdout[:_LOG_TRUNCATE])
            return
        logger.warning("%s failed (exit code %s): %s", label, result.code, result.error_text())

    async def run(self, args: Sequence[str], *, quiet: bool = False) -> CommandResult:
        argv = [str(a) for a in args]
        if not quiet:
            self._log_start(argv)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(self._env_factory()),
            )
        except OSError as e:
            result = CommandResult(ok=False, stderr=str(e), code=None)
            if not quiet:
                self._log_result(argv, result)
            return result

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            result = CommandResult(ok=False, stderr=f"Timed out after {self._timeout_s:g}s", code=_TIMEOUT_EXIT_CODE)
        else:
            result = CommandResult(ok=proc.returncode == 0, stdout=_decode(stdout), stderr=_decode(stderr), code=proc.returncode)

        if not quiet:
            self._log_result(argv, result)
        return result

    def run_sync(self, args: Sequence[str]) -> CommandResult:
        """Blocking variant for process-exit paths where the event loop may be gone."""
        argv = [str(a) for a in args]
        self._log_start(argv)
        try:
            proc = subprocess.run(
                [self._binary, *argv],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(self._env_factory()),
                timeout=self._timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            result = CommandResult(ok=False, stderr=f"Timed out after {self._timeout_s:g}s", code=_TIMEOUT_EXIT_CODE)
        except OSError as e:
            result = CommandResult(ok=False, stderr=str(e), code=None)
        else:
            result = CommandResult(
                ok=proc.returncode == 0,
                stdout=_decode(proc.stdout),
                stderr=_decode(proc.stderr),
                code=proc.returncode,
            )
        self._log_result(argv, result)
        return result

    # ----------------------------
    # Gateway surface
    # ----------------------------

    async def stop(self) -> CommandResult:
        return await self.run(["gateway", "stop"])

    def stop_sync(self) -> CommandResult:
        return self.run_sync(["gateway", "stop"])

    async def install(self, *, force: bool = True) -> CommandResult:
        args = ["gateway", "install"]
        if force:
            args.append("--force")
        return await self.run(args)

    async def status(self) -> CommandResult:
        return await self.run(["gateway", "status"])

    async def add_channel(self, name: str, token: str) -> CommandResult:
        return await self.run(["channels", "add", "--channel", str(name), "--token", str(token)])

    async def remove_channel(self, name: str) -> CommandResult:
        return await self.run(["channels", "remove", "--channel", str(name), "--delete"])
