"""
Request authentication and role guards.

Identity tokens are verified here and reduced to the caller's email. With
FIREBASE_PROJECT_ID set, tokens are Firebase ID tokens checked against
Google's published keys. Otherwise they are HS256 tokens signed with
JWT_SECRET, which is what local development and the test suite use.

Role guards are built with ``require_role`` and attached per route with
``Depends``; each guard costs one user lookup.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt
from fastapi import Depends, HTTPException, Request
from pymongo.database import Database

from database import get_db
from logger import logger

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = 60

FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
FIREBASE_JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"

_jwks_client = jwt.PyJWKClient(FIREBASE_JWKS_URL) if FIREBASE_PROJECT_ID else None

UNAUTHORIZED = "Unauthorized Access!"
FORBIDDEN = "Forbidden Access!"


def create_access_token(email: str, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a shared-secret identity token. Only valid when Firebase is not configured."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"email": email, "exp": expire}, JWT_SECRET, algorithm=JWT_ALG)


def verify_token(token: str) -> Dict[str, Any]:
    try:
        if _jwks_client is not None:
            signing_key = _jwks_client.get_signing_key_from_jwt(token)
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=FIREBASE_PROJECT_ID,
                issuer=f"https://securetoken.google.com/{FIREBASE_PROJECT_ID}",
            )
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        logger.warning("Rejected expired token")
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)
    except jwt.PyJWTError as e:
        logger.warning("Rejected invalid token: {}", e)
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)


def get_current_email(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)
    token = auth.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)
    email = verify_token(token).get("email")
    if not email:
        logger.warning("Rejected token without an email claim")
        raise HTTPException(status_code=401, detail=UNAUTHORIZED)
    return email.lower()


def require_role(role: str):
    def guard(email: str = Depends(get_current_email), db: Database = Depends(get_db)) -> Dict[str, Any]:
        user = db["user"].find_one({"email": email})
        if not user or user.get("role") != role:
            logger.warning("{} denied: {} role required", email, role)
            raise HTTPException(status_code=403, detail=FORBIDDEN)
        return user

    guard.__name__ = f"require_{role}"
    return guard


require_admin = require_role("admin")
require_decorator = require_role("decorator")
