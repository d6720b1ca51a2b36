"""
api/routes/v1/devices.py -- Known login devices of the current user.

A trusted device lowers the login risk score; untrusting or deleting one
makes the next login from it count as new.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import DeviceResponse, MessageResponse
from auth.dependencies import get_current_user
from auth.models import User
from auth.store import UserStore

router = APIRouter()

_NOT_FOUND = {"code": "not_found", "message": "Device not found."}


@router.get("/devices", response_model=list[DeviceResponse])
def list_devices(request: Request, current_user: User = Depends(get_current_user)) -> list[DeviceResponse]:
    store: UserStore = request.app.state.user_store
    return [DeviceResponse.from_device(d) for d in store.list_devices(current_user.id)]


@router.post("/devices/{device_id}/trust", response_model=MessageResponse)
def trust_device(request: Request, device_id: str, current_user: User = Depends(get_current_user)) -> MessageResponse:
    if not request.app.state.user_store.set_device_trusted(current_user.id, device_id, True):
        raise HTTPException(status_code=404, detail=_NOT_FOUND)
    return MessageResponse(message="Device trusted.")


@router.post("/devices/{device_id}/untrust", response_model=MessageResponse)
def untrust_device(
    request: Request, device_id: str, current_user: User = Depends(get_current_user)
) -> MessageResponse:
    if not request.app.state.user_store.set_device_trusted(current_user.id, device_id, False):
        raise HTTPException(status_code=404, detail=_NOT_FOUND)
    return MessageResponse(message="Device untrusted.")


@router.delete("/devices/{device_id}", response_model=MessageResponse)
def delete_device(request: Request, device_id: str, current_user: User = Depends(get_current_user)) -> MessageResponse:
    if not request.app.state.user_store.delete_device(current_user.id, device_id):
        raise HTTPException(status_code=404, detail=_NOT_FOUND)
    return MessageResponse(message="Device removed.")
