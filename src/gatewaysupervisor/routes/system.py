"""Supervisor API: credentials, restart and status."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..service import NotOnboardedError, get_supervisor_service


router = APIRouter(tags=["system"])
logger = logging.getLogger(__name__)


class EnvVarPayload(BaseModel):
    key: str
    value: Optional[Union[str, int, float, bool]] = ""

    def value_text(self) -> str:
        # Falsy values (null, 0, false) are stored as an empty value.
        if not self.value:
            return ""
        if isinstance(self.value, bool):
            return "true"
        return str(self.value)


class PutEnvRequest(BaseModel):
    vars: Optional[List[EnvVarPayload]] = Field(
        default=None,
        description="Full replacement of the credential file. System-managed keys are ignored.",
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


@router.get("/env")
async def get_env() -> Dict[str, Any]:
    return get_supervisor_service().get_credentials()


@router.put("/env")
async def put_env(req: PutEnvRequest) -> Any:
    if req.vars is None:
        return _error(400, "Missing vars array")

    svc = get_supervisor_service()
    try:
        return await svc.replace_credentials([{"key": v.key, "value": v.value_text()} for v in req.vars])
    except ValueError as e:
        return _error(400, str(e))
    except OSError as e:
        logger.error("Failed to save credentials: %s", e)
        return _error(500, f"Failed to save credentials: {e}")


@router.post("/gateway/restart")
async def restart_gateway() -> Any:
    svc = get_supervisor_service()
    try:
        return await svc.trigger_restart()
    except NotOnboardedError as e:
        return _error(400, str(e))


@router.get("/status")
async def status() -> Dict[str, Any]:
    return await get_supervisor_service().get_status()


@router.get("/gateway-status")
async def gateway_status() -> Dict[str, Any]:
    return await get_supervisor_service().gateway_cli_status()
