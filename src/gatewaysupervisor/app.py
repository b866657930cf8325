"""GatewaySupervisor FastAPI application."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .routes import system_router


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    # Boot: reload env, reconcile channels, start the gateway (when onboarded).
    from .service import start_supervisor, stop_supervisor

    await start_supervisor()
    try:
        yield
    finally:
        await stop_supervisor()


app = FastAPI(
    title="GatewaySupervisor",
    description="Credential store and process supervisor for a local messaging gateway.",
    version="0.1.0",
    lifespan=_lifespan,
)

app.include_router(system_router, prefix="/api")


@app.get("/health")
async def health() -> dict:
    from .service import get_supervisor_service

    running = await get_supervisor_service().supervisor.is_running()
    return {
        "status": "healthy" if running else "starting",
        "gateway": "running" if running else "starting",
    }
