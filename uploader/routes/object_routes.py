"""Serves objects from the local object store behind signed-URL tokens."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse

from uploader.exceptions import UnauthorizedAccessError
from uploader.service_locator import get_storage_gateway
from uploader.storage.gateway import StorageGateway
from uploader.storage.local_store import LocalObjectStore

router = APIRouter(prefix="/objects", tags=["Objects"])


@router.get("/{key:path}")
async def get_object(
    key: str,
    token: str = Query(...),
    gateway: StorageGateway = Depends(get_storage_gateway),
):
    """
    Stream a locally stored object.

    Raises:
        - 403: Token missing, expired or issued for another key
        - 404: Local store not in use or object missing
    """
    store = gateway.store
    if not isinstance(store, LocalObjectStore):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")

    if not store.verify_token(key, token):
        raise UnauthorizedAccessError("Invalid or expired object token")

    try:
        path = store.resolve_path(key)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")

    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")

    return FileResponse(path)
