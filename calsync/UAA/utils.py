# calsync/UAA/utils.py
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import ValidationError as PydanticValidationError

from calsync.errors import AuthError
from calsync.UAA.schemas import TokenPayload

logger = structlog.get_logger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "change_me_now")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None
JWT_LEEWAY_SECONDS = int(os.getenv("JWT_LEEWAY_SECONDS", "30"))
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))


# Bearer tokens are minted by the app's auth service; we only verify them.
# issue_access_token exists for local tooling and tests.
def issue_access_token(uid: str, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": uid,
        "iat": int(now.timestamp()),
        "exp": int((now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))).timestamp()),
        "jti": uuid.uuid4().hex,
        "type": "access",
    }
    if JWT_AUDIENCE:
        claims["aud"] = JWT_AUDIENCE
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def verify_access_token(token: str) -> TokenPayload:
    options = {"leeway": JWT_LEEWAY_SECONDS, "verify_aud": bool(JWT_AUDIENCE)}
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], audience=JWT_AUDIENCE, options=options)
        payload = TokenPayload(**claims)
    except ExpiredSignatureError:
        raise AuthError("bearer token expired", code="token_expired")
    except (JWTError, PydanticValidationError) as e:
        logger.info("bearer_token_rejected", error=e.__class__.__name__)
        raise AuthError("invalid bearer token")
    if payload.type != "access":
        raise AuthError("wrong token type")
    return payload
