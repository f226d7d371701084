from pydantic import BaseModel
from typing import Optional


class TokenPayload(BaseModel):
    sub: str
    exp: int
    jti: Optional[str] = None
    type: str = "access"


class CurrentUser(BaseModel):
    uid: str
    jti: Optional[str] = None
