from __future__ import annotations

from typing import Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr

from utils.otp_service import OtpService


router = APIRouter(prefix="/otp", tags=["otp"])


def get_otp_service(request: Request) -> OtpService:
    return request.app.state.otp_service


class OtpSendIn(BaseModel):
    email: Optional[EmailStr] = None


class OtpVerifyIn(BaseModel):
    email: Optional[EmailStr] = None
    otp: Union[str, int, None] = None


@router.post("/send")
def send_otp(payload: OtpSendIn, service: OtpService = Depends(get_otp_service)):
    service.send(payload.email)
    return {"message": "OTP sent successfully"}


@router.post("/verify")
def verify_otp(payload: OtpVerifyIn, service: OtpService = Depends(get_otp_service)):
    service.verify(payload.email, None if payload.otp is None else str(payload.otp))
    return {"message": "Verification Successful", "verified": True}


@router.get("/status")
def otp_status(email: EmailStr, service: OtpService = Depends(get_otp_service)):
    """Countdown state for the verification dialog."""
    return service.status(str(email))
