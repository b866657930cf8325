from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, MutableMapping, Optional

from .channels import ChannelReconciler
from .commands import GatewayCli
from .config import SupervisorConfig
from .config_sanitizer import ConfigSanitizer, GatewayConfigFile
from .env_store import EnvFileWatcher, EnvStore
from .supervisor import GatewaySupervisor, RestartRequiredFlag, SupervisorState


logger = logging.getLogger(__name__)


class NotOnboardedError(RuntimeError):
    pass


@dataclass(frozen=True)
class SupervisorService:
    """Composition root: credential store + channel reconciler + gateway supervisor."""

    config: SupervisorConfig
    env_store: EnvStore
    config_file: GatewayConfigFile
    sanitizer: ConfigSanitizer
    reconciler: ChannelReconciler
    cli: GatewayCli
    supervisor: GatewaySupervisor
    restart_flag: RestartRequiredFlag
    watcher: Optional[EnvFileWatcher] = None
    # Serializes credential replace, restart and the boot-time channel sync.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, compare=False, repr=False)

    def is_onboarded(self) -> bool:
        return self.config.is_onboarded()

    def reload_env(self) -> bool:
        changed = self.env_store.reload()
        if changed and self.is_onboarded():
            self.restart_flag.set()
        return changed

    # ----------------------------
    # Caller-facing operations
    # ----------------------------

    def get_credentials(self) -> Dict[str, Any]:
        return {
            "vars": [v.to_dict() for v in self.env_store.list_vars()],
            "restartRequired": bool(self.restart_flag),
        }

    async def replace_credentials(self, vars: Iterable[Any]) -> Dict[str, Any]:
        filtered = self.env_store.validate(self.env_store.without_system_vars(vars))

        async with self.lock:
            # Disable channels whose token is going away before the file forgets it.
            await self.reconciler.sync(filtered, "remove")
            self.env_store.write(filtered)
            if self.watcher is not None:
                self.watcher.mark_seen()
            changed = self.reload_env()
            logger.info("Env vars saved (%d vars, changed=%s)", len(filtered), changed)

            report = await self.reconciler.sync(filtered, "add")
            if report.added:
                self.sanitizer.sanitize_saved(filtered)

            return {"ok": True, "changed": changed, "restartRequired": bool(self.restart_flag)}

    async def trigger_restart(self) -> Dict[str, Any]:
        if not self.is_onboarded():
            raise NotOnboardedError("Not onboarded")
        async with self.lock:
            await self.supervisor.restart(self.env_store.reload)
            self.restart_flag.clear()
        return {"ok": True}

    async def get_status(self) -> Dict[str, Any]:
        config_exists = self.config_file.exists()
        running = await self.supervisor.is_running()
        state = self.supervisor.state
        if running and state is SupervisorState.STOPPED:
            state = SupervisorState.RUNNING

        if running:
            gateway = "running"
        elif config_exists:
            gateway = "starting"
        else:
            gateway = "not_onboarded"

        environ = self.env_store.environ
        return {
            "gateway": gateway,
            "state": state.value,
            "configExists": config_exists,
            "channels": self.reconciler.channel_status(environ),
            "restartRequired": bool(self.restart_flag),
            "repo": environ.get("GITHUB_WORKSPACE_REPO", ""),
        }

    async def gateway_cli_status(self) -> Dict[str, Any]:
        return (await self.cli.status()).to_dict()

    def finalize_onboarded_config(self, saved_vars: Iterable[Any]) -> bool:
        """Managed defaults + secret scrub right after onboarding wrote the config."""
        return self.sanitizer.apply_managed_defaults(saved_vars)

    # ----------------------------
    # Lifecycle
    # ----------------------------

    async def boot(self) -> None:
        if self.is_onboarded():
            async with self.lock:
                self.env_store.reload()
                # Also repairs channel state if a previous credential replace was interrupted.
                await self.reconciler.sync(self.env_store.read(), "all")
            await self.supervisor.start()
        else:
            logger.info("Awaiting onboarding")
        if self.watcher is not None:
            self.watcher.start()

    async def shutdown(self, *, stop_gateway: bool = True) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
        await self.supervisor.shutdown()
        if stop_gateway:
            self.supervisor.stop_gateway_on_exit()


def build_supervisor_service(
    *,
    config: SupervisorConfig,
    environ: Optional[MutableMapping[str, str]] = None,
    cli: Optional[GatewayCli] = None,
    supervisor: Optional[GatewaySupervisor] = None,
    watch_env_file: bool = True,
) -> SupervisorService:
    env_store = EnvStore(path=config.env_file, environ=environ)

    def _gateway_env() -> Dict[str, str]:
        return config.gateway_env(env_store.environ)

    if cli is None:
        cli = GatewayCli(binary=config.gateway_bin, env_factory=_gateway_env, timeout_s=config.cli_timeout_s)
    config_file = GatewayConfigFile(path=config.config_path)
    sanitizer = ConfigSanitizer(config_file=config_file, env_store=env_store)
    reconciler = ChannelReconciler(config_file=config_file, cli=cli, credentials_dir=config.credentials_dir)
    if supervisor is None:
        supervisor = GatewaySupervisor(config=config, cli=cli, env_factory=_gateway_env)
    restart_flag = RestartRequiredFlag()

    watcher: Optional[EnvFileWatcher] = None
    svc_ref: Dict[str, SupervisorService] = {}
    if watch_env_file:
        watcher = EnvFileWatcher(
            path=config.env_file,
            on_change=lambda: svc_ref["svc"].reload_env(),
            interval_s=config.env_watch_interval_s,
        )

    svc = SupervisorService(
        config=config,
        env_store=env_store,
        config_file=config_file,
        sanitizer=sanitizer,
        reconciler=reconciler,
        cli=cli,
        supervisor=supervisor,
        restart_flag=restart_flag,
        watcher=watcher,
    )
    svc_ref["svc"] = svc
    return svc


_service: Optional[SupervisorService] = None


def get_supervisor_service() -> SupervisorService:
    global _service
    if _service is None:
        _service = create_default_supervisor_service()
    return _service


def create_default_supervisor_service() -> SupervisorService:
    return build_supervisor_service(config=SupervisorConfig.from_env())


async def start_supervisor() -> None:
    await get_supervisor_service().boot()


async def stop_supervisor() -> None:
    global _service
    if _service is None:
        return
    try:
        await _service.shutdown()
    finally:
        _service = None
