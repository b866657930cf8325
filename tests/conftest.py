from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_supervisor_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    # Never touch a real /data volume or a developer's gateway state from tests.
    for key in (
        "GATEWAYSUPERVISOR_HOME",
        "GATEWAYSUPERVISOR_ENV_FILE",
        "GATEWAYSUPERVISOR_GATEWAY_BIN",
        "GATEWAYSUPERVISOR_GATEWAY_HOST",
        "GATEWAYSUPERVISOR_GATEWAY_PORT",
        "OPENCLAW_WORKSPACE_DIR",
        "OPENCLAW_GATEWAY_TOKEN",
    ):
        monkeypatch.delenv(key, raising=False)

    base = Path(str(tmp_path_factory.mktemp("gatewaysupervisor-test-env")))
    monkeypatch.setenv("OPENCLAW_STATE_DIR", str(base / ".openclaw"))
    monkeypatch.setenv("GATEWAYSUPERVISOR_HOME", str(base))
    # A binary that cannot exist, so nothing shells out to a real gateway by accident.
    monkeypatch.setenv("GATEWAYSUPERVISOR_GATEWAY_BIN", str(base / "no-such-gateway-bin"))


@pytest.fixture(autouse=True)
def _reset_service_singleton(monkeypatch: pytest.MonkeyPatch) -> None:
    from gatewaysupervisor import service as supervisor_service

    monkeypatch.setattr(supervisor_service, "_service", None)
