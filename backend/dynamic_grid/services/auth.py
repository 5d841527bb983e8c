from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from dynamic_grid.config import settings
from dynamic_grid.models.user import GridUser
from dynamic_grid.utils.logger import logger

security = HTTPBearer(auto_error=False)

# Role claim names seen in tokens from the identity provider.
_ROLE_CLAIMS = (
    "roles",
    "role",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
)


def _roles_from_claims(payload: Dict[str, Any]) -> List[str]:
    roles: List[str] = []
    for claim in _ROLE_CLAIMS:
        value = payload.get(claim)
        if value is None:
            continue
        if isinstance(value, str):
            value = [value]
        roles.extend(str(v) for v in value if v)
    # Keep order, drop duplicates.
    return list(dict.fromkeys(roles))


def decode_user(token: str) -> GridUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.error(f"JWT validation error: {str(e)}")
        raise credentials_exception

    user_id = payload.get("sub") or payload.get("nameid") or payload.get("user_id")
    if user_id is None:
        raise credentials_exception

    return GridUser(
        id=str(user_id),
        username=payload.get("username") or payload.get("unique_name") or payload.get("name"),
        roles=_roles_from_claims(payload),
        is_active=payload.get("is_active", True) is not False,
    )


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[GridUser]:
    """Caller identity when a bearer token is present; anonymous otherwise."""
    if credentials is None:
        return None
    return decode_user(credentials.credentials)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> GridUser:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = decode_user(credentials.credentials)
    if not user.is_active:
        logger.warning(f"Inactive user attempted access: {user.id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")
    return user


def grid_admin_required(current_user: GridUser = Depends(get_current_user)) -> GridUser:
    if not current_user.has_any_role(settings.GRID_ADMIN_ROLES):
        logger.warning(f"Non-admin user attempted grid admin action: {current_user.id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user
