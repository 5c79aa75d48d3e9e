from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from typing import Optional

from alphasup.errors import AuthenticationError, AuthorizationError
from alphasup.services import auth as auth_service
from alphasup.services.auth import Principal


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_principal(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Principal:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required")
    try:
        return auth_service.verify_access_token(credentials.credentials)
    except JWTError:
        raise AuthenticationError("Invalid authentication credentials")


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise AuthorizationError("Insufficient permissions")
    return principal


def ensure_owner_or_admin(principal: Principal, owner_id: Optional[str]) -> None:
    if not principal.can_access(owner_id):
        raise AuthorizationError("Access denied")
