"""
Authentication utilities

Bearer tokens are issued by the external auth provider and signed with the
shared JWT_SECRET (HS256). The token subject is the user id; the caller's
role and profile come from the profiles collection.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import os

from points_ledger.config import ROLES

security = HTTPBearer(auto_error=False)
JWT_ALGORITHM = "HS256"


def _decode(token: str) -> dict:
    secret = os.environ.get('JWT_SECRET')
    if not secret:
        raise HTTPException(status_code=401, detail="Authentication is not configured")

    audience = os.environ.get('JWT_AUDIENCE')
    options = {} if audience else {"verify_aud": False}
    return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=audience, options=options)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify the bearer token and return the caller's identity."""
    from database import db

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        payload = _decode(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    profile = await db.profiles.find_one({"user_id": user_id}, {"_id": 0})
    if not profile:
        raise HTTPException(status_code=401, detail="User not found")

    role = (profile.get("role") or "user").lower()
    return {
        "user_id": user_id,
        "profile_id": profile["id"],
        "username": profile.get("username"),
        "email": profile.get("email"),
        "role": role if role in ROLES else "user"
    }

