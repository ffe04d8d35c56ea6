from typing import Optional
from fastapi import Depends, Header

from shared.errors import AuthorizationError
from shared.models import Caller, UserRole


async def get_caller(
    x_user_id: str = Header(...),
    x_user_role: UserRole = Header(UserRole.CUSTOMER),
    x_user_email: Optional[str] = Header(None),
) -> Caller:
    # Identity headers are set by the gateway after it has authenticated the request.
    return Caller(user_id=x_user_id, role=x_user_role, email=x_user_email)


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise AuthorizationError("Admin access required")
    return caller
