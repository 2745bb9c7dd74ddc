"""
Signed evidence retrieval
"""
import os

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from backend.api.audits import evidence_store

router = APIRouter()


@router.get("/{path:path}")
async def get_evidence(path: str, expires: int, signature: str):
    """Serve an evidence file for a valid, unexpired signed link"""
    if ".." in path.split("/") or not evidence_store.verify(path, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired evidence link")

    full_path = os.path.join(evidence_store.root, path)
    if not os.path.isfile(full_path):
        raise HTTPException(status_code=404, detail="Evidence file not found")
    return FileResponse(full_path)
