"""
Doctor Access Router
Doctors submit a scanned QR payload or a typed access key; a valid token
opens a 30-minute session on that patient's record.
"""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from medaccess.core.error_handling import INVALID_OR_EXPIRED_MESSAGE, SessionNotFoundError
from medaccess.database import get_db
from medaccess.dependencies import (
    Actor, get_current_user, get_current_doctor, get_clock, get_token_codec, get_session_manager
)
from medaccess.services.doctor_session_manager import DoctorSessionManager
from medaccess.services.token_codec import TokenCodec
from medaccess.services.token_validator import TokenValidator, AccessChannel

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/doctor-access", tags=["doctor-access"])


class ValidateTokenRequest(BaseModel):
    token: str
    channel: AccessChannel = AccessChannel.QR_SCAN


class SessionGrantResponse(BaseModel):
    session_id: str
    patient_id: str
    expires_at: Optional[str] = None


class SessionStatusResponse(BaseModel):
    valid: bool
    patient_id: Optional[str] = None
    expires_at: Optional[str] = None


@router.post("/validate", response_model=SessionGrantResponse)
def validate_and_open_session(
    request_data: ValidateTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_doctor),
    clock=Depends(get_clock),
    codec: TokenCodec = Depends(get_token_codec),
    manager: DoctorSessionManager = Depends(get_session_manager),
):
    """
    Validate a QR payload / access key and open a doctor session.

    403 for any invalid, expired or malformed value (same message for all);
    409 when the doctor already holds the maximum number of sessions.
    """
    validator = TokenValidator(db, codec=codec, clock=clock)
    result = validator.validate(
        request_data.token,
        channel=request_data.channel,
        doctor_id=current_user.id,
        user_agent=request.headers.get("user-agent"),
    )
    if not result.valid:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=INVALID_OR_EXPIRED_MESSAGE)

    # SessionCapacityError propagates to the access-grant exception handler (409)
    session_id = manager.create_session(result.user_id, current_user.id, token_id=result.token_id)
    session = manager.get_session(session_id) or {}

    return SessionGrantResponse(
        session_id=session_id,
        patient_id=result.user_id,
        expires_at=session.get("expires_at"),
    )


@router.get("/sessions")
def list_active_sessions(
    current_user: Actor = Depends(get_current_doctor),
    manager: DoctorSessionManager = Depends(get_session_manager),
) -> List[dict]:
    return manager.get_active_doctor_sessions(current_user.id)


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
def check_session(
    session_id: str,
    current_user: Actor = Depends(get_current_doctor),
    manager: DoctorSessionManager = Depends(get_session_manager),
):
    """Gate for every read of the patient record by a doctor"""
    session = manager.get_session(session_id)
    if session is None or session["doctor_id"] != current_user.id:
        return SessionStatusResponse(valid=False)

    if not manager.validate_session(session_id):
        return SessionStatusResponse(valid=False)

    return SessionStatusResponse(
        valid=True,
        patient_id=session["patient_id"],
        expires_at=session["expires_at"],
    )


@router.delete("/sessions/{session_id}")
def revoke_session(
    session_id: str,
    current_user: Actor = Depends(get_current_user),
    manager: DoctorSessionManager = Depends(get_session_manager),
):
    session = manager.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    if current_user.role != "admin" and session["doctor_id"] != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    revoked = manager.revoke_session(session_id)
    return {"session_id": session_id, "revoked": revoked}
