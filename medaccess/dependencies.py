from dataclasses import dataclass
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from medaccess.utils.security import verify_token
from medaccess.services.doctor_session_manager import DoctorSessionManager
from medaccess.services.token_codec import TokenCodec
from medaccess.utils.clock import utcnow

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

ROLES = {"patient", "doctor", "admin"}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as asserted by the identity provider"""
    id: str
    role: str


async def get_current_user(token: str = Depends(oauth2_scheme)) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_token(token)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    role = payload.get("role")
    if not isinstance(user_id, str) or not user_id or role not in ROLES:
        raise credentials_exception

    return Actor(id=user_id, role=role)


def require_role(role: str):
    """
    Dependency factory that creates a role-checking dependency.
    Usage: current_user = Depends(require_role("patient"))
    """
    async def role_checker(current_user: Actor = Depends(get_current_user)) -> Actor:
        if current_user.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Only {role}s can access this resource"
            )
        return current_user
    return role_checker


get_current_doctor = require_role("doctor")
get_current_admin = require_role("admin")


def require_patient_or_admin(patient_id: str, current_user: Actor):
    """Patients act on their own record only; administrators on any"""
    if current_user.role == "admin":
        return
    if current_user.role == "patient" and current_user.id == patient_id:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


def get_session_manager(request: Request) -> DoctorSessionManager:
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable"
        )
    return manager


def get_clock():
    """Clock used by request-scoped services; overridden in tests"""
    return utcnow


def get_token_codec() -> TokenCodec:
    return TokenCodec()
