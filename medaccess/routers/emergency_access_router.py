"""
Emergency Access Router - public QR link
Anonymous 3-minute access to the emergency-info view.

The caller sends the already-decoded token; the lookup is an exact match.
Any failure returns the same 404 body.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from medaccess.core.error_handling import INVALID_OR_EXPIRED_MESSAGE
from medaccess.database import get_db
from medaccess.dependencies import get_clock
from medaccess.services.emergency_access_service import EmergencyAccessService, client_ip_from_headers

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/public", tags=["emergency"])


class PublicQRAccessRequest(BaseModel):
    qr_code: Optional[str] = Field(default=None, alias="qrCode")


@router.post("/qr-access")
def public_qr_access(
    request_data: PublicQRAccessRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    if not request_data.qr_code:
        return JSONResponse(status_code=400, content={"error": "QR code missing"})

    service = EmergencyAccessService(db, clock=clock)
    grant = service.request_access(
        request_data.qr_code.strip(),
        ip_address=client_ip_from_headers(
            request.headers.get("x-forwarded-for"),
            request.client.host if request.client else None,
        ),
        user_agent=request.headers.get("user-agent"),
    )
    if grant is None:
        return JSONResponse(status_code=404, content={"error": INVALID_OR_EXPIRED_MESSAGE})

    return grant.to_dict()
