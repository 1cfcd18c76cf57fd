"""
ChurnShield Recovery Engine - Authentication Utilities
JWT bearer tokens and auth dependencies.

Identity is managed outside this service: a token's `sub` is an account id.
Admin routes check the stored account role, not the token claim.
"""
import os
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .database import get_db
from .models.db_models import AccountDB, AccountRole

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "churnshield-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


def create_access_token(account_id: str, email: str, role: str = "user") -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": account_id,
        "email": email,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token (signature and expiry)."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        return None


async def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> AccountDB:
    """
    Dependency to get the current authenticated account.
    Validates JWT token and fetches the account from database.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    # Cancel links are signed with the same key but are not access tokens
    if payload.get("purpose") is not None:
        raise credentials_exception

    account_id: str = payload.get("sub")
    if account_id is None:
        raise credentials_exception

    account = db.query(AccountDB).filter(AccountDB.id == account_id).first()
    if account is None:
        raise credentials_exception

    return account


async def require_admin(current_account: AccountDB = Depends(get_current_account)) -> AccountDB:
    """
    Dependency to require admin role.
    Use this on admin-only routes.
    """
    if current_account.role != AccountRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_account
