from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional


_DEFAULT_GATEWAY_HOST = "127.0.0.1"
_DEFAULT_GATEWAY_PORT = 18789


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    return str(v).strip()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class SupervisorConfig:
    """Runtime settings for the gateway supervisor.

    Paths follow the gateway's own layout: the JSON config lives at
    `<state_dir>/openclaw.json` and its existence is the onboarding marker.
    """

    state_dir: Path
    home_dir: Path
    env_file: Path
    workspace_dir: Path
    gateway_bin: str = "openclaw"
    gateway_host: str = _DEFAULT_GATEWAY_HOST
    gateway_port: int = _DEFAULT_GATEWAY_PORT

    probe_timeout_s: float = 1.0
    cli_timeout_s: float = 15.0
    restart_poll_s: float = 0.25
    restart_wait_s: float = 8.0
    env_watch_interval_s: float = 2.0

    @staticmethod
    def from_env() -> "SupervisorConfig":
        state_dir = Path(_env_str("OPENCLAW_STATE_DIR", "/data/.openclaw")).expanduser()
        home_dir = Path(_env_str("GATEWAYSUPERVISOR_HOME", "/data")).expanduser()
        env_file = Path(_env_str("GATEWAYSUPERVISOR_ENV_FILE", str(home_dir / ".env"))).expanduser()
        workspace_dir = Path(_env_str("OPENCLAW_WORKSPACE_DIR", str(state_dir / "workspace"))).expanduser()

        return SupervisorConfig(
            state_dir=state_dir,
            home_dir=home_dir,
            env_file=env_file,
            workspace_dir=workspace_dir,
            gateway_bin=_env_str("GATEWAYSUPERVISOR_GATEWAY_BIN", "openclaw"),
            gateway_host=_env_str("GATEWAYSUPERVISOR_GATEWAY_HOST", _DEFAULT_GATEWAY_HOST),
            gateway_port=_env_int("GATEWAYSUPERVISOR_GATEWAY_PORT", _DEFAULT_GATEWAY_PORT),
            probe_timeout_s=_env_float("GATEWAYSUPERVISOR_PROBE_TIMEOUT_S", 1.0),
            cli_timeout_s=_env_float("GATEWAYSUPERVISOR_CLI_TIMEOUT_S", 15.0),
            restart_poll_s=_env_float("GATEWAYSUPERVISOR_RESTART_POLL_S", 0.25),
            restart_wait_s=_env_float("GATEWAYSUPERVISOR_RESTART_WAIT_S", 8.0),
            env_watch_interval_s=_env_float("GATEWAYSUPERVISOR_ENV_WATCH_INTERVAL_S", 2.0),
        )

    @property
    def config_path(self) -> Path:
        return self.state_dir / "openclaw.json"

    @property
    def credentials_dir(self) -> Path:
        return self.state_dir / "credentials"

    def is_onboarded(self) -> bool:
        return self.config_path.exists()

    def gateway_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Environment for every gateway invocation (child process and CLI calls)."""
        env = dict(os.environ if base is None else base)
        env["OPENCLAW_HOME"] = str(self.home_dir)
        env["OPENCLAW_CONFIG_PATH"] = str(self.config_path)
        env["XDG_CONFIG_HOME"] = str(self.state_dir)
        return env
