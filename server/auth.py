"""
Authentication module for JWT token management.

Tokens are issued by the external auth service; the directory only verifies
them. create_access_token is kept for that service and for local testing.
"""

import sys
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from e2ee.config import Settings

ALGORITHM = "HS256"

settings = Settings.from_env()
bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None,
                        secret_key: Optional[str] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time
        secret_key: Signing key; defaults to the configured one

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.token_expire_minutes)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key or settings.secret_key, algorithm=ALGORITHM)


def verify_token(token: str, secret_key: Optional[str] = None) -> Optional[str]:
    """
    Verify a JWT token and extract username.

    Args:
        token: JWT token to verify

    Returns:
        Username if valid, None otherwise
    """
    try:
        payload = jwt.decode(token, secret_key or settings.secret_key, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            return None
        return username
    except JWTError:
        return None


async def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> str:
    """FastAPI dependency returning the authenticated username"""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    app_settings = getattr(request.app.state, "settings", settings)
    username = verify_token(credentials.credentials, app_settings.secret_key)
    if not username:
        raise HTTPException(status_code=401, detail="Invalid token")
    return username


if __name__ == "__main__":
    # Development helper: python -m server.auth <username>
    if len(sys.argv) != 2:
        print("Usage: python -m server.auth <username>")
        sys.exit(1)
    print(create_access_token({"sub": sys.argv[1]}))
