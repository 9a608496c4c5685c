"""
Access Token Router - patient QR codes and access keys
Issue, list and revoke the patient's semi-permanent access token.
"""

import logging
from typing import List, Optional
from datetime import datetime
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from medaccess.database import get_db
from medaccess.dependencies import (
    Actor, get_current_user, get_clock, get_token_codec, require_patient_or_admin
)
from medaccess.services.access_token_store import AccessTokenStore
from medaccess.services.token_codec import TokenCodec

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/access-tokens", tags=["access-tokens"])


class IssuedTokenResponse(BaseModel):
    token_id: str
    patient_id: str
    status: str
    expires_at: datetime
    access_key: str
    qr_url: str


class TokenSummary(BaseModel):
    token_id: str
    status: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None


class RevokeResponse(BaseModel):
    revoked_count: int


@router.post("/{patient_id}", response_model=IssuedTokenResponse)
def issue_access_token(
    patient_id: str,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_user),
    clock=Depends(get_clock),
    codec: TokenCodec = Depends(get_token_codec),
):
    """
    Generate (or return the existing) QR code and access key for a patient.
    Safe to call repeatedly.
    """
    require_patient_or_admin(patient_id, current_user)
    store = AccessTokenStore(db, clock=clock)
    token = store.issue(patient_id, created_by=current_user.id)

    return IssuedTokenResponse(
        token_id=token.id,
        patient_id=token.user_id,
        status=token.status,
        expires_at=token.expires_at,
        access_key=token.access_key,
        qr_url=codec.generate_secure_qr_url(token.raw_value),
    )


@router.get("/{patient_id}", response_model=List[TokenSummary])
def list_access_tokens(
    patient_id: str,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_user),
):
    """Token history for a patient; token values are never listed"""
    require_patient_or_admin(patient_id, current_user)
    store = AccessTokenStore(db)
    return [
        TokenSummary(
            token_id=t.id,
            status=t.status,
            expires_at=t.expires_at,
            created_at=t.created_at,
            created_by=t.created_by,
        )
        for t in store.list_for_patient(patient_id)
    ]


@router.post("/{patient_id}/revoke", response_model=RevokeResponse)
def revoke_access_tokens(
    patient_id: str,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_user),
    clock=Depends(get_clock),
):
    require_patient_or_admin(patient_id, current_user)
    store = AccessTokenStore(db, clock=clock)
    count = store.revoke_all_for_patient(patient_id, revoked_by=current_user.id)
    logger.info(f"Revoked {count} access tokens for patient {patient_id}")
    return RevokeResponse(revoked_count=count)
