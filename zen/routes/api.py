from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from zen.services.worker import UnknownFunctionError, handle_invocation, handler_kind

router = APIRouter(prefix="/api", tags=["api"])


@router.get("/ping")
async def ping() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/invoke/{function_name}")
async def invoke_function(function_name: str, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    try:
        handler_kind(function_name)
    except UnknownFunctionError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        # Playwright's sync API blocks; keep it off the event loop.
        return await run_in_threadpool(handle_invocation, function_name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc
