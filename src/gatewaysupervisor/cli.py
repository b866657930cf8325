from __future__ import annotations

import argparse
import asyncio
import copy
import json
import logging
import os
import signal
import sys


def _stderr(line: str) -> None:
    print(str(line), file=sys.stderr)


def _configure_console_logging(level: int = logging.INFO) -> None:
    """Console logging shared by every subcommand (and uvicorn, see below)."""
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=datefmt)
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            h.setFormatter(formatter)
        root.setLevel(int(level))
        return
    logging.basicConfig(level=int(level), format=fmt, datefmt=datefmt)


def _build_uvicorn_log_config(*, uvicorn) -> dict:
    """uvicorn log_config using the same line format as the rest of the process."""
    base = getattr(getattr(uvicorn, "config", None), "LOGGING_CONFIG", None)
    if not isinstance(base, dict):
        return {}
    log_config = copy.deepcopy(base)

    datefmt = "%H:%M:%S"
    default_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    access_fmt = '%(asctime)s [%(levelname)s] %(name)s: %(client_addr)s - "%(request_line)s" %(status_code)s'

    fmts = log_config.setdefault("formatters", {})
    fmts["default"] = {"()": "logging.Formatter", "fmt": default_fmt, "datefmt": datefmt}
    fmts["access"] = {"()": "logging.Formatter", "fmt": access_fmt, "datefmt": datefmt}
    return log_config


def _run_supervise() -> None:
    from .service import get_supervisor_service, stop_supervisor

    async def _main() -> None:
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()

        def _handle(_signum, _frame) -> None:  # pragma: no cover
            loop.call_soon_threadsafe(stop.set)

        try:
            signal.signal(signal.SIGINT, _handle)
            signal.signal(signal.SIGTERM, _handle)
        except (ValueError, OSError):
            # Not on the main thread.
            pass

        svc = get_supervisor_service()
        await svc.boot()
        try:
            await stop.wait()
        finally:
            await stop_supervisor()

    asyncio.run(_main())


def _run_channels_sync(mode: str) -> dict:
    from .service import get_supervisor_service

    svc = get_supervisor_service()
    report = asyncio.run(svc.reconciler.sync(svc.env_store.read(), mode))
    return report.to_dict()


def main(argv: list[str] | None = None) -> None:
    _configure_console_logging()
    parser = argparse.ArgumentParser(prog="gatewaysupervisor", description="GatewaySupervisor (gateway process + credentials)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the supervisor HTTP API (boots and supervises the gateway)")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT") or 8080),
        help="Bind port (default: $PORT or 8080)",
    )
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    sub.add_parser("supervise", help="Supervise the gateway without the HTTP API")

    sync = sub.add_parser("channels-sync", help="Reconcile gateway channels with the saved credentials")
    sync.add_argument("--mode", default="all", choices=["add", "remove", "all"], help="Which transitions to apply (default: all)")

    sub.add_parser("sanitize-config", help="Replace literal secrets in the gateway config with ${ENV_KEY} references")
    sub.add_parser("finalize-onboarding", help="Write managed config defaults after onboarding, then sanitize")

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        try:
            import uvicorn
        except ImportError as e:
            raise SystemExit(
                "GatewaySupervisor HTTP server dependencies are missing.\n"
                "Install with: `pip install gatewaysupervisor`\n"
                f"(import failed: {e})"
            )

        run_kwargs: dict[str, object] = {
            "host": str(args.host),
            "port": int(args.port),
            "reload": bool(args.reload),
        }
        log_config = _build_uvicorn_log_config(uvicorn=uvicorn)
        if log_config:
            run_kwargs["log_config"] = log_config

        uvicorn.run("gatewaysupervisor.app:app", **run_kwargs)
        return

    if args.cmd == "supervise":
        _run_supervise()
        return

    if args.cmd == "channels-sync":
        out = _run_channels_sync(str(args.mode))
        print(json.dumps(out, ensure_ascii=False, indent=2, sort_keys=True))
        if not out.get("ok"):
            raise SystemExit(1)
        return

    if args.cmd == "sanitize-config":
        from .service import get_supervisor_service

        svc = get_supervisor_service()
        if not svc.config_file.exists():
            raise SystemExit(f"Gateway config not found: {svc.config_file.path}")
        if not svc.sanitizer.sanitize_saved():
            raise SystemExit(1)
        return

    if args.cmd == "finalize-onboarding":
        from .service import get_supervisor_service

        svc = get_supervisor_service()
        if not svc.finalize_onboarded_config(svc.env_store.read()):
            _stderr(f"Failed to finalize gateway config at {svc.config_file.path}")
            raise SystemExit(1)
        return

    raise SystemExit(2)


if __name__ == "__main__":
    main()
