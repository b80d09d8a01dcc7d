"""
Photographer authentication

A single admin account configured through ADMIN_EMAIL and ADMIN_PASSWORD_HASH
(a bcrypt hash). Login returns a JWT bearer token; admin routes depend on
get_current_admin.
"""
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr

from config import Settings, get_settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_ROLE = "photographer"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(data: dict, settings: Settings) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_alg)


class AdminUser(BaseModel):
    email: EmailStr
    role: str = ADMIN_ROLE


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


def authenticate(req: LoginRequest, settings: Settings) -> str:
    if not settings.admin_email or not settings.admin_password_hash:
        raise HTTPException(status_code=503, detail="Admin login is not configured")
    if req.email.lower() != settings.admin_email.lower():
        logger.warning("Failed admin login for %s", req.email)
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not verify_password(req.password, settings.admin_password_hash):
        logger.warning("Failed admin login for %s", req.email)
        raise HTTPException(status_code=400, detail="Invalid credentials")
    return create_token({"email": settings.admin_email, "role": ADMIN_ROLE}, settings)


def get_current_admin(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> AdminUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if payload.get("role") != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin only")
    return AdminUser(email=payload.get("email"), role=payload.get("role"))


if __name__ == "__main__":
    # Prints a hash for ADMIN_PASSWORD_HASH.
    if len(sys.argv) != 2:
        print("usage: python auth.py <password>")
        sys.exit(1)
    print(hash_password(sys.argv[1]))
