from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from gatewaysupervisor.config_sanitizer import ConfigSanitizer, GatewayConfigError, GatewayConfigFile
from gatewaysupervisor.env_store import EnvStore


def _sanitizer(tmp_path: Path, cfg: Any, *, environ: Dict[str, str] | None = None) -> tuple[ConfigSanitizer, Path]:
    config_path = tmp_path / "openclaw.json"
    config_path.write_text(cfg if isinstance(cfg, str) else json.dumps(cfg, indent=2), encoding="utf-8")
    store = EnvStore(path=tmp_path / ".env", environ={} if environ is None else environ)
    return ConfigSanitizer(config_file=GatewayConfigFile(path=config_path), env_store=store), config_path


@pytest.mark.basic
def test_sanitize_replaces_every_occurrence_and_keeps_other_keys(tmp_path: Path) -> None:
    secret = "sk-live-0123456789"
    cfg = {
        "models": {"openai": {"apiKey": secret}},
        "tools": {"copies": [secret, "plain"]},
        "gateway": {"port": 18789, "bind": "loopback"},
    }
    sanitizer, path = _sanitizer(tmp_path, cfg)

    replaced = sanitizer.sanitize({secret: "${OPENAI_API_KEY}"})

    assert replaced == ["${OPENAI_API_KEY}"]
    text = path.read_text(encoding="utf-8")
    assert secret not in text
    out = json.loads(text)
    assert out["models"]["openai"]["apiKey"] == "${OPENAI_API_KEY}"
    assert out["tools"]["copies"] == ["${OPENAI_API_KEY}", "plain"]
    assert out["gateway"] == cfg["gateway"]


@pytest.mark.basic
def test_sanitize_ignores_short_values(tmp_path: Path) -> None:
    cfg = {"a": "12345678", "b": "x"}
    sanitizer, path = _sanitizer(tmp_path, cfg)
    before = path.read_text(encoding="utf-8")

    assert sanitizer.sanitize({"12345678": "${SHORT_TOKEN}"}) == []
    assert path.read_text(encoding="utf-8") == before


@pytest.mark.basic
def test_sanitize_prefers_longer_secret_that_contains_a_shorter_one(tmp_path: Path) -> None:
    short, long = "abcdefghij", "abcdefghij-and-more"
    sanitizer, path = _sanitizer(tmp_path, {"x": long, "y": short})

    sanitizer.sanitize({short: "${SHORT_KEY}", long: "${LONG_KEY}"})

    out = json.loads(path.read_text(encoding="utf-8"))
    assert out == {"x": "${LONG_KEY}", "y": "${SHORT_KEY}"}


@pytest.mark.basic
def test_sanitize_matches_json_escaped_secrets(tmp_path: Path) -> None:
    secret = 'pa"ss\\word-123'
    sanitizer, path = _sanitizer(tmp_path, {"auth": {"password": secret}})

    sanitizer.sanitize({secret: "${SETUP_PASSWORD}"})

    out = json.loads(path.read_text(encoding="utf-8"))
    assert out["auth"]["password"] == "${SETUP_PASSWORD}"


@pytest.mark.basic
def test_sanitize_malformed_config_raises_and_leaves_file(tmp_path: Path) -> None:
    sanitizer, path = _sanitizer(tmp_path, '{"token": "sk-live-0123456789",')

    with pytest.raises(GatewayConfigError):
        sanitizer.sanitize({"sk-live-0123456789": "${OPENAI_API_KEY}"})
    assert sanitizer.sanitize_saved([{"key": "OPENAI_API_KEY", "value": "sk-live-0123456789"}]) is False
    assert path.read_text(encoding="utf-8") == '{"token": "sk-live-0123456789",'


@pytest.mark.basic
def test_tracked_secrets_include_gateway_token_and_saved_secrets(tmp_path: Path) -> None:
    sanitizer, path = _sanitizer(
        tmp_path,
        {"gateway": {"auth": {"token": "gw-token-abcdefghij"}}, "tools": {"brave": "brave-key-123456"}},
        environ={"OPENCLAW_GATEWAY_TOKEN": "gw-token-abcdefghij"},
    )

    secrets = sanitizer.tracked_secrets([{"key": "BRAVE_API_KEY", "value": "brave-key-123456"}])
    assert secrets == {
        "gw-token-abcdefghij": "${OPENCLAW_GATEWAY_TOKEN}",
        "brave-key-123456": "${BRAVE_API_KEY}",
    }

    assert sanitizer.sanitize_saved([{"key": "BRAVE_API_KEY", "value": "brave-key-123456"}]) is True
    out = json.loads(path.read_text(encoding="utf-8"))
    assert out == {"gateway": {"auth": {"token": "${OPENCLAW_GATEWAY_TOKEN}"}}, "tools": {"brave": "${BRAVE_API_KEY}"}}


@pytest.mark.basic
def test_apply_managed_defaults_writes_channels_hooks_and_no_literals(tmp_path: Path) -> None:
    tg, dc = "123456:AAH-telegram-token", "discord.bot.token.value"
    sanitizer, path = _sanitizer(tmp_path, {"agents": {"defaults": {"model": "x"}}, "hooks": {"internal": {"entries": {"other": {"enabled": False}}}}})

    ok = sanitizer.apply_managed_defaults(
        [{"key": "TELEGRAM_BOT_TOKEN", "value": tg}, {"key": "DISCORD_BOT_TOKEN", "value": dc}]
    )

    assert ok is True
    text = path.read_text(encoding="utf-8")
    assert tg not in text
    assert dc not in text

    out = json.loads(text)
    assert out["agents"] == {"defaults": {"model": "x"}}
    assert out["commands"]["restart"] is True
    assert out["hooks"]["internal"]["enabled"] is True
    assert out["hooks"]["internal"]["entries"]["other"] == {"enabled": False}
    assert out["hooks"]["internal"]["entries"]["bootstrap-extra-files"]["enabled"] is True
    assert out["channels"]["telegram"] == {
        "enabled": True,
        "botToken": "${TELEGRAM_BOT_TOKEN}",
        "dmPolicy": "pairing",
        "groupPolicy": "allowlist",
    }
    assert out["channels"]["discord"]["token"] == "${DISCORD_BOT_TOKEN}"


@pytest.mark.basic
def test_apply_managed_defaults_reports_missing_config(tmp_path: Path) -> None:
    store = EnvStore(path=tmp_path / ".env", environ={})
    sanitizer = ConfigSanitizer(config_file=GatewayConfigFile(path=tmp_path / "missing.json"), env_store=store)

    assert sanitizer.apply_managed_defaults([]) is False
    assert not (tmp_path / "missing.json").exists()
