from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient

from gatewaysupervisor.commands import CommandResult
from gatewaysupervisor.config import SupervisorConfig
from gatewaysupervisor.supervisor import SupervisorState


TG_TOKEN = "123456:AAH-telegram-token"


class _FakeGatewayCli:
    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.calls: List[Tuple[str, ...]] = []

    async def add_channel(self, name: str, token: str) -> CommandResult:
        self.calls.append(("add", name))
        cfg = json.loads(self.config_path.read_text(encoding="utf-8"))
        cfg.setdefault("channels", {})[name] = {"enabled": True, "botToken": token}
        self.config_path.write_text(json.dumps(cfg), encoding="utf-8")
        return CommandResult(ok=True, code=0)

    async def remove_channel(self, name: str) -> CommandResult:
        self.calls.append(("remove", name))
        cfg = json.loads(self.config_path.read_text(encoding="utf-8"))
        cfg.get("channels", {}).pop(name, None)
        self.config_path.write_text(json.dumps(cfg), encoding="utf-8")
        return CommandResult(ok=True, code=0)

    async def status(self) -> CommandResult:
        self.calls.append(("status",))
        return CommandResult(ok=True, stdout="Gateway: running", code=0)


class _FakeSupervisor:
    def __init__(self) -> None:
        self.running = False
        self.starts = 0
        self.restarts = 0
        self.exits = 0

    @property
    def state(self) -> SupervisorState:
        return SupervisorState.RUNNING if self.running else SupervisorState.STOPPED

    async def is_running(self) -> bool:
        return self.running

    async def start(self) -> None:
        self.starts += 1

    async def restart(self, reload_env: Callable[[], Any]) -> None:
        reload_env()
        self.restarts += 1

    async def shutdown(self) -> None:
        return None

    def stop_gateway_on_exit(self) -> None:
        self.exits += 1


def _install_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, *, onboarded: bool) -> Dict[str, Any]:
    from gatewaysupervisor import service as supervisor_service

    state_dir = tmp_path / ".openclaw"
    state_dir.mkdir(parents=True, exist_ok=True)
    cfg = SupervisorConfig(
        state_dir=state_dir,
        home_dir=tmp_path,
        env_file=tmp_path / ".env",
        workspace_dir=state_dir / "workspace",
    )
    if onboarded:
        cfg.config_path.write_text(json.dumps({"gateway": {"port": 18789}}), encoding="utf-8")

    environ: Dict[str, str] = {}
    cli = _FakeGatewayCli(cfg.config_path)
    sup = _FakeSupervisor()
    svc = supervisor_service.build_supervisor_service(
        config=cfg,
        environ=environ,
        cli=cli,  # type: ignore[arg-type]
        supervisor=sup,  # type: ignore[arg-type]
        watch_env_file=False,
    )
    monkeypatch.setattr(supervisor_service, "_service", svc)
    return {"svc": svc, "cli": cli, "sup": sup, "environ": environ, "cfg": cfg}


@pytest.mark.basic
def test_health_and_env_listing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _install_service(tmp_path, monkeypatch, onboarded=False)
    (tmp_path / ".env").write_text("OPENAI_API_KEY=sk-1\nCUSTOM=x\nPORT=1\n", encoding="utf-8")

    from gatewaysupervisor.app import app

    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "starting", "gateway": "starting"}

        r = client.get("/api/env")
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["restartRequired"] is False
        by_key = {v["key"]: v for v in body["vars"]}
        assert by_key["OPENAI_API_KEY"]["value"] == "sk-1"
        assert by_key["CUSTOM"]["group"] == "custom"
        assert "PORT" not in by_key

    # Not onboarded: boot must not start the gateway.
    assert ctx["sup"].starts == 0


@pytest.mark.basic
def test_put_env_requires_vars_array(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_service(tmp_path, monkeypatch, onboarded=True)

    from gatewaysupervisor.app import app

    with TestClient(app) as client:
        r = client.put("/api/env", json={})
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "Missing vars array"}

        r2 = client.put("/api/env", json={"vars": [{"key": "BAD KEY", "value": "x"}]})
        assert r2.status_code == 400
        assert r2.json()["ok"] is False

    assert not (tmp_path / ".env").exists()


@pytest.mark.basic
def test_credential_change_flags_restart_until_restarted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _install_service(tmp_path, monkeypatch, onboarded=True)

    from gatewaysupervisor.app import app

    with TestClient(app) as client:
        assert ctx["sup"].starts == 1

        r = client.put(
            "/api/env",
            json={
                "vars": [
                    {"key": "TELEGRAM_BOT_TOKEN", "value": TG_TOKEN},
                    {"key": "PORT", "value": "9999"},
                    {"key": "OPENAI_API_KEY", "value": "sk-openai-123456"},
                ]
            },
        )
        assert r.status_code == 200, r.text
        assert r.json() == {"ok": True, "changed": True, "restartRequired": True}

        # System keys never reach the credential file.
        assert (tmp_path / ".env").read_text(encoding="utf-8") == (
            f"TELEGRAM_BOT_TOKEN={TG_TOKEN}\nOPENAI_API_KEY=sk-openai-123456\n"
        )
        assert ctx["environ"]["TELEGRAM_BOT_TOKEN"] == TG_TOKEN
        assert ctx["cli"].calls == [("add", "telegram")]

        text = ctx["cfg"].config_path.read_text(encoding="utf-8")
        assert TG_TOKEN not in text
        assert "${TELEGRAM_BOT_TOKEN}" in text

        status = client.get("/api/status").json()
        assert status["restartRequired"] is True
        assert status["gateway"] == "starting"
        assert status["configExists"] is True
        assert status["channels"] == {"telegram": {"status": "configured", "paired": 0}}

        r2 = client.post("/api/gateway/restart")
        assert r2.status_code == 200, r2.text
        assert r2.json() == {"ok": True}
        assert ctx["sup"].restarts == 1
        assert client.get("/api/env").json()["restartRequired"] is False

        # Same values again: nothing changes, nothing to restart for.
        r3 = client.put(
            "/api/env",
            json={"vars": [{"key": "TELEGRAM_BOT_TOKEN", "value": TG_TOKEN}, {"key": "OPENAI_API_KEY", "value": "sk-openai-123456"}]},
        )
        assert r3.json() == {"ok": True, "changed": False, "restartRequired": False}
        assert ctx["cli"].calls == [("add", "telegram")]

        # Dropping the token disables the channel before the file forgets it.
        r4 = client.put("/api/env", json={"vars": [{"key": "OPENAI_API_KEY", "value": "sk-openai-123456"}]})
        assert r4.json()["restartRequired"] is True
        assert ctx["cli"].calls[-1] == ("remove", "telegram")
        assert "TELEGRAM_BOT_TOKEN" not in ctx["environ"]

    assert ctx["sup"].exits == 1


@pytest.mark.basic
def test_not_onboarded_saves_without_restart_flag(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _install_service(tmp_path, monkeypatch, onboarded=False)

    from gatewaysupervisor.app import app

    with TestClient(app) as client:
        r = client.put("/api/env", json={"vars": [{"key": "OPENAI_API_KEY", "value": "sk-openai-123456"}]})
        assert r.status_code == 200, r.text
        assert r.json() == {"ok": True, "changed": True, "restartRequired": False}

        r2 = client.post("/api/gateway/restart")
        assert r2.status_code == 400
        assert r2.json() == {"ok": False, "error": "Not onboarded"}

        status = client.get("/api/status").json()
        assert status["gateway"] == "not_onboarded"
        assert status["state"] == "stopped"

    assert ctx["sup"].restarts == 0
    assert ctx["cli"].calls == []


@pytest.mark.basic
def test_status_reports_running_gateway_and_cli_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _install_service(tmp_path, monkeypatch, onboarded=True)
    ctx["environ"]["GITHUB_WORKSPACE_REPO"] = "me/workspace"

    from gatewaysupervisor.app import app

    with TestClient(app) as client:
        ctx["sup"].running = True
        status = client.get("/api/status").json()
        assert status["gateway"] == "running"
        assert status["state"] == "running"
        assert status["repo"] == "me/workspace"
        assert client.get("/health").json() == {"status": "healthy", "gateway": "running"}

        r = client.get("/api/gateway-status")
        assert r.status_code == 200, r.text
        assert r.json() == {"ok": True, "stdout": "Gateway: running", "stderr": "", "code": 0}


@pytest.mark.basic
def test_put_env_stores_scalar_values_as_text(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _install_service(tmp_path, monkeypatch, onboarded=False)

    from gatewaysupervisor.app import app

    with TestClient(app) as client:
        r = client.put(
            "/api/env",
            json={
                "vars": [
                    {"key": "CUSTOM_PORT", "value": 8080},
                    {"key": "CUSTOM_RATIO", "value": 1.5},
                    {"key": "CUSTOM_FLAG", "value": True},
                    {"key": "CUSTOM_OFF", "value": False},
                    {"key": "CUSTOM_NULL", "value": None},
                ]
            },
        )
        assert r.status_code == 200, r.text

    assert (tmp_path / ".env").read_text(encoding="utf-8") == (
        "CUSTOM_PORT=8080\nCUSTOM_RATIO=1.5\nCUSTOM_FLAG=true\nCUSTOM_OFF=\nCUSTOM_NULL=\n"
    )
