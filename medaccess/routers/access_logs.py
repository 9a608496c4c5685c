from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from medaccess.database import get_db
from medaccess.dependencies import Actor, get_current_admin
from medaccess.services.access_log_service import AccessLogService

router = APIRouter(prefix="/api/access-logs", tags=["access-logs"])


@router.get("")
def list_access_logs(
    patient_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_admin),
):
    """Audit trail for the administrative view, newest first"""
    logs = AccessLogService().list_access_logs(db, limit=limit, patient_id=patient_id)
    return {"logs": [log.to_dict() for log in logs]}
