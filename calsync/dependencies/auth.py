# calsync/dependencies/auth.py
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from calsync.errors import AuthError
from calsync.UAA.schemas import CurrentUser
from calsync.UAA.utils import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise AuthError("missing bearer token", code="missing_auth")
    payload = verify_access_token(credentials.credentials)
    return CurrentUser(uid=payload.sub, jti=payload.jti)
