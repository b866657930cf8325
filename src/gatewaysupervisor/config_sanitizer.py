from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .env_store import EnvStore


logger = logging.getLogger(__name__)

# Shorter values are too likely to collide with ordinary config text.
MIN_SECRET_LENGTH = 8


class GatewayConfigError(RuntimeError):
    pass


def secret_reference(env_key: str) -> str:
    return "${" + str(env_key) + "}"


def _json_fragment(value: str) -> str:
    """The form `value` takes inside a serialized JSON string literal."""
    return json.dumps(str(value), ensure_ascii=False)[1:-1]


def _atomic_write_text(path: Path, data: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd: Optional[int] = None
    tmp_path: Optional[str] = None
    try:
        tmp_fd, tmp_path = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            tmp_fd = None
            f.write(data)
        os.replace(str(tmp_path), str(path))
        tmp_path = None
    finally:
        if tmp_fd is not None:
            try:
                os.close(tmp_fd)
            except OSError:
                pass
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


class GatewayConfigFile:
    """The gateway's JSON config on disk (`<state_dir>/openclaw.json`)."""

    def __init__(self, *, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def read_text(self) -> str:
        try:
            return self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise GatewayConfigError(f"Cannot read {self._path}: {e}") from e

    def load(self) -> Dict[str, Any]:
        return self.parse(self.read_text())

    def parse(self, text: str) -> Dict[str, Any]:
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as e:
            raise GatewayConfigError(f"Malformed JSON in {self._path}: {e}") from e
        if not isinstance(obj, dict):
            raise GatewayConfigError(f"{self._path} must contain a JSON object")
        return obj

    def write_text(self, text: str) -> None:
        _atomic_write_text(self._path, text)

    def save(self, cfg: Dict[str, Any]) -> None:
        self.write_text(json.dumps(cfg, ensure_ascii=False, indent=2))

    def is_channel_enabled(self, cfg: Mapping[str, Any], name: str) -> bool:
        channels = cfg.get("channels")
        if not isinstance(channels, dict):
            return False
        entry = channels.get(name)
        return isinstance(entry, dict) and bool(entry.get("enabled"))

    def replace_literal(self, secret: str, reference: str) -> bool:
        """Replace every occurrence of one literal secret; True when the file changed."""
        if not secret:
            return False
        text = self.read_text()
        needle = _json_fragment(secret)
        if needle not in text:
            return False
        self.write_text(text.replace(needle, reference))
        return True


# Channel blocks written after onboarding: channel -> (env key, token field).
_MANAGED_CHANNEL_BLOCKS = {
    "telegram": ("TELEGRAM_BOT_TOKEN", "botToken"),
    "discord": ("DISCORD_BOT_TOKEN", "token"),
}
_BOOTSTRAP_HOOK = "bootstrap-extra-files"
_BOOTSTRAP_PATHS = ["hooks/bootstrap/AGENTS.md", "hooks/bootstrap/TOOLS.md"]


class ConfigSanitizer:
    """Keeps literal secrets out of the gateway config.

    Substitution is done on the whole serialized text rather than per field,
    since the gateway (and its CLI) may copy one token into several places.
    """

    def __init__(self, *, config_file: GatewayConfigFile, env_store: EnvStore) -> None:
        self._config_file = config_file
        self._env_store = env_store

    def tracked_secrets(self, saved_vars: Optional[Iterable[Any]] = None) -> Dict[str, str]:
        secrets: Dict[str, str] = {}
        gateway_token = self._env_store.environ.get("OPENCLAW_GATEWAY_TOKEN")
        if gateway_token:
            secrets[gateway_token] = secret_reference("OPENCLAW_GATEWAY_TOKEN")
        for key, value in self._env_store.secret_values(saved_vars).items():
            secrets[value] = secret_reference(key)
        return secrets

    def sanitize(self, secrets: Mapping[str, str]) -> List[str]:
        """Rewrite the config with each tracked secret replaced by its reference.

        Returns the references that were substituted. Raises GatewayConfigError
        when the config is missing or not valid JSON.
        """
        for ref in secrets.values():
            if _json_fragment(ref) != ref:
                raise ValueError(f"Secret reference needs JSON escaping: {ref!r}")

        text = self._config_file.read_text()
        self._config_file.parse(text)

        tracked = [(s, r) for s, r in secrets.items() if s and len(s) > MIN_SECRET_LENGTH]
        # Longest first so a secret that contains another is replaced whole.
        tracked.sort(key=lambda item: len(item[0]), reverse=True)

        replaced: List[str] = []
        for secret, ref in tracked:
            needle = _json_fragment(secret)
            if needle in text:
                text = text.replace(needle, ref)
                replaced.append(ref)

        if replaced:
            self._config_file.parse(text)
            self._config_file.write_text(text)
            logger.info("Config sanitized (%d secret reference(s))", len(replaced))
        return replaced

    def sanitize_saved(self, saved_vars: Optional[Iterable[Any]] = None) -> bool:
        """Operation-boundary wrapper: log and report failure instead of raising."""
        try:
            self.sanitize(self.tracked_secrets(saved_vars))
        except GatewayConfigError as e:
            logger.error("Config sanitize failed: %s", e)
            return False
        return True

    def apply_managed_defaults(self, saved_vars: Iterable[Any]) -> bool:
        """Post-onboarding config: restart command, bootstrap hook, channels, then sanitize."""
        saved = self._env_store.secret_values(saved_vars)
        try:
            cfg = self._config_file.load()
        except GatewayConfigError as e:
            logger.error("Cannot apply managed config defaults: %s", e)
            return False

        channels = cfg.get("channels")
        if not isinstance(channels, dict):
            channels = cfg["channels"] = {}
        commands = cfg.get("commands")
        if not isinstance(commands, dict):
            commands = cfg["commands"] = {}
        hooks = cfg.get("hooks")
        if not isinstance(hooks, dict):
            hooks = cfg["hooks"] = {}
        internal = hooks.get("internal")
        if not isinstance(internal, dict):
            internal = hooks["internal"] = {}
        entries = internal.get("entries")
        if not isinstance(entries, dict):
            entries = internal["entries"] = {}

        commands["restart"] = True
        internal["enabled"] = True
        existing = entries.get(_BOOTSTRAP_HOOK)
        entries[_BOOTSTRAP_HOOK] = {
            **(existing if isinstance(existing, dict) else {}),
            "enabled": True,
            "paths": list(_BOOTSTRAP_PATHS),
        }

        for name, (env_key, token_field) in _MANAGED_CHANNEL_BLOCKS.items():
            token = saved.get(env_key)
            if not token:
                continue
            channels[name] = {
                "enabled": True,
                token_field: token,
                "dmPolicy": "pairing",
                "groupPolicy": "allowlist",
            }
            logger.info("%s channel configured", name.capitalize())

        self._config_file.save(cfg)
        return self.sanitize_saved(saved_vars)
