"""
Control Adoption Engine - Authentication Utilities
JWT bearer tokens and org-role auth dependencies
"""
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Path, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "control-adoption-secret-key-change-in-production")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Org role ranking: higher outranks lower
ROLE_RANK = {
    "learner": 0,
    "manager": 1,
    "admin": 2,
    "owner": 3,
}

# Bearer token security
security = HTTPBearer()


@dataclass
class Actor:
    """Authenticated caller, scoped to one org."""
    user_id: str
    org_id: str
    role: str


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token (signature and expiry)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Dependency to get the current authenticated actor.
    Validates the JWT; membership is carried by the token's org_id claim.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    org_id = payload.get("org_id")
    role = payload.get("role")
    if not user_id or not org_id or role not in ROLE_RANK:
        raise credentials_exception

    return Actor(user_id=user_id, org_id=org_id, role=role)


def require_org_role(min_role: str):
    """
    Dependency factory: caller must belong to the path org with at least `min_role`.
    Managers may read; admins may mutate.
    """
    required = ROLE_RANK[min_role]

    async def dependency(
        org_id: str = Path(..., description="Organization id"),
        actor: Actor = Depends(get_current_actor),
    ) -> Actor:
        if actor.org_id != org_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not a member of this organization",
            )
        if ROLE_RANK[actor.role] < required:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{min_role.capitalize()} access required",
            )
        return actor

    return dependency
