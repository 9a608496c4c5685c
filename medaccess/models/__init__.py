from medaccess.models.access_grant import AccessToken, DoctorSession, TokenStatus
from medaccess.models.access_log import AccessLog

__all__ = [
    "AccessToken",
    "DoctorSession",
    "TokenStatus",
    "AccessLog",
]
