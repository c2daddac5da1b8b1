"""
Request dependencies: the shared BankingSystem and the calling user
"""

from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..system import BankingSystem


security = HTTPBearer(auto_error=False)


def get_banking_system(request: Request) -> BankingSystem:
    """The app's BankingSystem, built on first use"""
    system = getattr(request.app.state, "banking_system", None)
    if system is None:
        system = BankingSystem(config=request.app.state.config)
        request.app.state.banking_system = system
    return system


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_user_id: Optional[str] = Header(None),
    system: BankingSystem = Depends(get_banking_system)
) -> str:
    """Dependency that validates the bearer JWT and returns its subject"""
    config = system.config
    if not config.auth_enabled:
        # Test mode: caller names itself
        if not x_user_id:
            raise HTTPException(status_code=401, detail="X-User-Id header required")
        return x_user_id

    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id
