from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .commands import GatewayCli
from .config_sanitizer import GatewayConfigError, GatewayConfigFile, secret_reference


logger = logging.getLogger(__name__)

SYNC_MODES = ("add", "remove", "all")


@dataclass(frozen=True)
class ChannelDefinition:
    name: str
    env_key: str


DEFAULT_CHANNELS: Sequence[ChannelDefinition] = (
    ChannelDefinition(name="telegram", env_key="TELEGRAM_BOT_TOKEN"),
    ChannelDefinition(name="discord", env_key="DISCORD_BOT_TOKEN"),
)


@dataclass
class ChannelSyncReport:
    mode: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["ok"] = self.ok
        return out


def _saved_token_map(saved_vars: Iterable[Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for v in saved_vars or []:
        if isinstance(v, dict):
            key, value = v.get("key"), v.get("value")
        else:
            key, value = getattr(v, "key", None), getattr(v, "value", None)
        if key and value:
            out[str(key)] = str(value)
    return out


class ChannelReconciler:
    """Enable/disable gateway channels so they match the saved credentials.

    Callers replacing credentials run the `remove` phase before writing the new
    credential file and the `add` phase after the environment reload, so a
    channel never points at a token that no longer exists.
    """

    def __init__(
        self,
        *,
        config_file: GatewayConfigFile,
        cli: GatewayCli,
        credentials_dir: Path,
        channels: Sequence[ChannelDefinition] = DEFAULT_CHANNELS,
    ) -> None:
        self._config_file = config_file
        self._cli = cli
        self._credentials_dir = Path(credentials_dir)
        self._channels = tuple(channels)

    @property
    def channels(self) -> Sequence[ChannelDefinition]:
        return self._channels

    async def sync(self, saved_vars: Iterable[Any], mode: str = "all") -> ChannelSyncReport:
        if mode not in SYNC_MODES:
            raise ValueError(f"Invalid channel sync mode: {mode!r} (expected one of {', '.join(SYNC_MODES)})")

        report = ChannelSyncReport(mode=mode)
        try:
            cfg = self._config_file.load()
        except GatewayConfigError as e:
            logger.error("Channel sync (%s) skipped: %s", mode, e)
            report.error = str(e)
            return report

        saved = _saved_token_map(saved_vars)
        for ch in self._channels:
            token = saved.get(ch.env_key)
            enabled = self._config_file.is_channel_enabled(cfg, ch.name)

            if token and not enabled and mode in ("add", "all"):
                await self._add(ch, token, report)
            elif not token and enabled and mode in ("remove", "all"):
                await self._remove(ch, report)
        return report

    async def _add(self, ch: ChannelDefinition, token: str, report: ChannelSyncReport) -> None:
        logger.info("Adding channel: %s", ch.name)
        result = await self._cli.add_channel(ch.name, token)
        if not result.ok:
            logger.error("channels add %s: %s", ch.name, result.error_text())
            report.failed.append(ch.name)
            return
        try:
            if self._config_file.replace_literal(token, secret_reference(ch.env_key)):
                logger.info("Replaced literal %s in gateway config with a reference", ch.env_key)
        except GatewayConfigError as e:
            logger.error("channels add %s: cannot sanitize config: %s", ch.name, e)
            report.failed.append(ch.name)
            return
        report.added.append(ch.name)
        logger.info("Channel %s added", ch.name)

    async def _remove(self, ch: ChannelDefinition, report: ChannelSyncReport) -> None:
        logger.info("Removing channel: %s", ch.name)
        result = await self._cli.remove_channel(ch.name)
        if not result.ok:
            logger.error("channels remove %s: %s", ch.name, result.error_text())
            report.failed.append(ch.name)
            return
        report.removed.append(ch.name)
        logger.info("Channel %s removed", ch.name)

    def channel_status(self, environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
        """Enabled channels with a token in the environment, with their paired-user count."""
        try:
            cfg = self._config_file.load()
        except GatewayConfigError:
            return {}

        out: Dict[str, Dict[str, Any]] = {}
        for ch in self._channels:
            if not self._config_file.is_channel_enabled(cfg, ch.name):
                continue
            if not environ.get(ch.env_key):
                continue

            paired = self._count_paired_from_credentials(ch.name)
            inline = cfg["channels"][ch.name].get("allowFrom")
            if isinstance(inline, list):
                paired += len(inline)
            out[ch.name] = {"status": "paired" if paired > 0 else "configured", "paired": paired}
        return out

    def _count_paired_from_credentials(self, name: str) -> int:
        paired = 0
        try:
            files = sorted(p for p in self._credentials_dir.glob(f"{name}-*") if p.name.endswith("-allowFrom.json"))
        except OSError:
            return 0
        for path in files:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            allow = data.get("allowFrom") if isinstance(data, dict) else None
            if isinstance(allow, list):
                paired += len(allow)
        return paired
