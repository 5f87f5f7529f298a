from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse, HTMLResponse

from zen.services.artifacts import get_artifact_store

router = APIRouter(tags=["assets"])


@router.get("/sessions/{session_id}/{asset_path:path}")
async def read_session_asset(session_id: str, asset_path: str):
    store = get_artifact_store()
    manifest = store.load_manifest(session_id)
    if manifest is None:
        raise HTTPException(status_code=404, detail="manifest not found")
    if asset_path in ("", "index.html"):
        return HTMLResponse(content=manifest.index)

    target = store.resolve(session_id, asset_path)
    if target is None:
        raise HTTPException(status_code=404, detail="path not found in manifest")
    return FileResponse(path=target)
