from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, MutableMapping, Optional, Tuple


logger = logging.getLogger(__name__)

_SAFE_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SECRET_KEY_MARKERS = ("token", "key", "password", "secret")

# Managed by the deployment, never editable through the credential view.
SYSTEM_ENV_KEYS = frozenset(
    {
        "WEBHOOK_TOKEN",
        "OPENCLAW_GATEWAY_TOKEN",
        "SETUP_PASSWORD",
        "PORT",
        "OPENCLAW_STATE_DIR",
        "OPENCLAW_WORKSPACE_DIR",
    }
)


@dataclass(frozen=True)
class KnownEnvVarSpec:
    key: str
    label: str
    group: str
    hint: str = ""


def known_env_var_allowlist() -> Dict[str, KnownEnvVarSpec]:
    """Credential keys the supervisor knows about, in display order.

    Only these keys are removed from the process environment when they disappear
    from the credential file; custom keys are left alone.
    """
    specs = [
        KnownEnvVarSpec(key="ANTHROPIC_API_KEY", label="Anthropic API Key", group="models", hint="From console.anthropic.com"),
        KnownEnvVarSpec(key="ANTHROPIC_TOKEN", label="Anthropic Setup Token", group="models", hint="From claude setup-token"),
        KnownEnvVarSpec(key="OPENAI_API_KEY", label="OpenAI API Key", group="models", hint="From platform.openai.com"),
        KnownEnvVarSpec(key="GEMINI_API_KEY", label="Gemini API Key", group="models", hint="From aistudio.google.com"),
        KnownEnvVarSpec(
            key="GITHUB_TOKEN",
            label="GitHub Access Token",
            group="github",
            hint="Create one with repo scope at github.com/settings/tokens",
        ),
        KnownEnvVarSpec(
            key="GITHUB_WORKSPACE_REPO",
            label="Workspace Repo",
            group="github",
            hint="username/repo or https://github.com/username/repo",
        ),
        KnownEnvVarSpec(key="TELEGRAM_BOT_TOKEN", label="Telegram Bot Token", group="channels", hint="From @BotFather"),
        KnownEnvVarSpec(key="DISCORD_BOT_TOKEN", label="Discord Bot Token", group="channels", hint="From Discord Developer Portal"),
        KnownEnvVarSpec(key="BRAVE_API_KEY", label="Brave Search API Key", group="tools", hint="From brave.com/search/api"),
    ]

    out: Dict[str, KnownEnvVarSpec] = {}
    for s in specs:
        k = str(s.key or "").strip()
        if not k or not _SAFE_ENV_KEY_RE.match(k):
            raise ValueError(f"Invalid known env var key: {k!r}")
        out[k] = s
    return out


def is_secret_like_key(key: str) -> bool:
    lowered = str(key or "").lower()
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


@dataclass(frozen=True)
class EnvVar:
    key: str
    value: str
    label: str
    group: str
    hint: str
    source: str  # env_file|unset
    editable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _normalize_pairs(vars: Iterable[Any]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for v in vars or []:
        if isinstance(v, dict):
            key, value = v.get("key"), v.get("value")
        else:
            key, value = getattr(v, "key", None), getattr(v, "value", None)
        out.append({"key": str(key or "").strip(), "value": "" if value is None else str(value)})
    return out


class EnvStore:
    """Flat `KEY=VALUE` credential file reconciled into a process environment."""

    def __init__(
        self,
        *,
        path: Path,
        known_specs: Optional[Dict[str, KnownEnvVarSpec]] = None,
        environ: Optional[MutableMapping[str, str]] = None,
    ) -> None:
        self._path = Path(path).expanduser()
        self._known = dict(known_specs) if known_specs is not None else known_env_var_allowlist()
        self._environ: MutableMapping[str, str] = os.environ if environ is None else environ

    @property
    def path(self) -> Path:
        return self._path

    @property
    def environ(self) -> MutableMapping[str, str]:
        return self._environ

    @property
    def known_keys(self) -> Tuple[str, ...]:
        return tuple(self._known.keys())

    def read(self) -> List[Dict[str, str]]:
        try:
            content = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return []

        out: List[Dict[str, str]] = []
        for raw_line in content.split("\n"):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            if not sep:
                continue
            out.append({"key": key, "value": value})
        return out

    def validate(self, vars: Iterable[Any]) -> List[Dict[str, str]]:
        """Normalize a payload into writable pairs; raises ValueError on bad keys/values."""
        pairs = [p for p in _normalize_pairs(vars) if p["key"]]
        for p in pairs:
            if not _SAFE_ENV_KEY_RE.match(p["key"]):
                raise ValueError(f"Invalid env var key: {p['key']!r}")
            if any(ch in p["value"] for ch in ("\n", "\r", "\x00")):
                raise ValueError(f"Invalid env var value for {p['key']}: line breaks and NUL bytes are not supported")
        return pairs

    def write(self, vars: Iterable[Any]) -> None:
        # Validate everything before touching the file to avoid partial writes.
        pairs = self.validate(vars)

        data = "\n".join(f"{p['key']}={p['value']}" for p in pairs)
        if data:
            data += "\n"

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=self._path.name + ".", suffix=".tmp", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            # Keep secrets readable only by the current user.
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def reload(self) -> bool:
        """Apply the credential file to the process environment.

        Returns True when at least one variable was set, cleared or removed.
        """
        vars = self.read()
        file_keys = {v["key"] for v in vars}
        changed = False

        for v in vars:
            key, value = v["key"], v["value"]
            current = self._environ.get(key)
            if value and value != current:
                shown = "***" if is_secret_like_key(key) else value
                logger.info("Env updated: %s=%s", key, shown)
                self._environ[key] = value
                changed = True
            elif not value and current:
                logger.info("Env cleared: %s", key)
                self._environ.pop(key, None)
                changed = True

        for key in self._known:
            if key not in file_keys and self._environ.get(key):
                logger.info("Env removed: %s", key)
                self._environ.pop(key, None)
                changed = True

        return changed

    def without_system_vars(self, vars: Iterable[Any]) -> List[Dict[str, str]]:
        return [p for p in _normalize_pairs(vars) if p["key"] not in SYSTEM_ENV_KEYS]

    def list_vars(self) -> List[EnvVar]:
        file_vars = self.read()
        by_key: Dict[str, str] = {}
        for v in file_vars:
            by_key.setdefault(v["key"], v["value"])

        merged: List[EnvVar] = []
        for key, spec in self._known.items():
            value = by_key.get(key) or ""
            merged.append(
                EnvVar(
                    key=key,
                    value=value,
                    label=spec.label,
                    group=spec.group,
                    hint=spec.hint,
                    source="env_file" if value else "unset",
                )
            )

        for v in file_vars:
            key = v["key"]
            if key in self._known or key in SYSTEM_ENV_KEYS:
                continue
            merged.append(EnvVar(key=key, value=v["value"], label=key, group="custom", hint="", source="env_file"))
        return merged

    def secret_values(self, vars: Optional[Iterable[Any]] = None) -> Dict[str, str]:
        """Map env key -> value for secret-bearing known keys (from `vars` or the file)."""
        pairs = _normalize_pairs(vars) if vars is not None else self.read()
        out: Dict[str, str] = {}
        for p in pairs:
            if p["key"] in self._known and p["value"] and is_secret_like_key(p["key"]):
                out[p["key"]] = p["value"]
        return out


class EnvFileWatcher:
    """Polls the credential file and invokes `on_change` after external edits."""

    def __init__(self, *, path: Path, on_change: Callable[[], Any], interval_s: float = 2.0) -> None:
        self._path = Path(path)
        self._on_change = on_change
        self._interval_s = max(0.05, float(interval_s))
        self._task: Optional[asyncio.Task[None]] = None
        self._last: Optional[Tuple[int, int]] = None

    def _fingerprint(self) -> Optional[Tuple[int, int]]:
        try:
            st = self._path.stat()
        except OSError:
            return None
        return (int(st.st_mtime_ns), int(st.st_size))

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._last = self._fingerprint()
        self._task = asyncio.get_running_loop().create_task(self._loop())

    def mark_seen(self) -> None:
        """Record the current file state so our own writes are not reported."""
        self._last = self._fingerprint()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            current = self._fingerprint()
            if current == self._last:
                continue
            self._last = current
            logger.info("%s changed externally, reloading...", self._path)
            try:
                self._on_change()
            except Exception:
                logger.exception("Env file reload failed")
