"""
api/routes/v1/mfa.py -- MFA device enrolment and management.

Routes (all require auth):
  GET    /api/v1/mfa/devices
  POST   /api/v1/mfa/devices/totp            -- start TOTP enrolment
  POST   /api/v1/mfa/devices/totp/verify     -- confirm with a current code
  POST   /api/v1/mfa/devices/sms             -- send a code to a phone
  POST   /api/v1/mfa/devices/sms/verify
  POST   /api/v1/mfa/devices/email           -- send a code to an address
  POST   /api/v1/mfa/devices/email/verify
  DELETE /api/v1/mfa/devices/{device_id}

IDOR guard: deletes pass the caller's user_id to the store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import (
    EmailEnrollRequest,
    EnrollmentStartedResponse,
    MFADeviceResponse,
    MFAVerifyRequest,
    MessageResponse,
    SMSEnrollRequest,
    TOTPEnrollRequest,
    TOTPEnrollResponse,
)
from auth.dependencies import get_current_user
from auth.mfa import MFAService
from auth.models import User

router = APIRouter()


def _mfa(request: Request) -> MFAService:
    return request.app.state.mfa_service


@router.get("/mfa/devices", response_model=list[MFADeviceResponse])
def list_devices(request: Request, current_user: User = Depends(get_current_user)) -> list[MFADeviceResponse]:
    return [MFADeviceResponse.from_device(d) for d in _mfa(request).list_devices(current_user.id)]


@router.post("/mfa/devices/totp", response_model=TOTPEnrollResponse, status_code=201)
def enroll_totp(
    request: Request,
    body: TOTPEnrollRequest | None = None,
    current_user: User = Depends(get_current_user),
) -> TOTPEnrollResponse:
    enrollment = _mfa(request).enroll_totp(current_user, name=body.name if body else "Authenticator")
    return TOTPEnrollResponse(
        device_id=enrollment.device_id,
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
    )


@router.post("/mfa/devices/totp/verify", response_model=MFADeviceResponse)
def verify_totp(
    request: Request, body: MFAVerifyRequest, current_user: User = Depends(get_current_user)
) -> MFADeviceResponse:
    return MFADeviceResponse.from_device(_mfa(request).confirm_totp(current_user, body.code))


@router.post("/mfa/devices/sms", response_model=EnrollmentStartedResponse, status_code=201)
def enroll_sms(
    request: Request, body: SMSEnrollRequest, current_user: User = Depends(get_current_user)
) -> EnrollmentStartedResponse:
    device_id = _mfa(request).enroll_sms(current_user, body.phone)
    return EnrollmentStartedResponse(device_id=device_id, message="Verification code sent.")


@router.post("/mfa/devices/sms/verify", response_model=MFADeviceResponse)
def verify_sms(
    request: Request, body: MFAVerifyRequest, current_user: User = Depends(get_current_user)
) -> MFADeviceResponse:
    return MFADeviceResponse.from_device(_mfa(request).confirm_sms(current_user, body.code))


@router.post("/mfa/devices/email", response_model=EnrollmentStartedResponse, status_code=201)
def enroll_email(
    request: Request,
    body: EmailEnrollRequest | None = None,
    current_user: User = Depends(get_current_user),
) -> EnrollmentStartedResponse:
    address = str(body.email) if body and body.email else ""
    device_id = _mfa(request).enroll_email(current_user, address)
    return EnrollmentStartedResponse(device_id=device_id, message="Verification code sent.")


@router.post("/mfa/devices/email/verify", response_model=MFADeviceResponse)
def verify_email(
    request: Request, body: MFAVerifyRequest, current_user: User = Depends(get_current_user)
) -> MFADeviceResponse:
    return MFADeviceResponse.from_device(_mfa(request).confirm_email(current_user, body.code))


@router.delete("/mfa/devices/{device_id}", response_model=MessageResponse)
def delete_device(
    request: Request, device_id: int, current_user: User = Depends(get_current_user)
) -> MessageResponse:
    if not _mfa(request).delete_device(current_user.id, device_id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "MFA device not found."})
    return MessageResponse(message="MFA device removed.")
