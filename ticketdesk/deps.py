from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.asyncio import Redis

from .config import REDIS_URL, SECRET
from .registration import Participant
from .security import verify_principal_token

redis = Redis.from_url(REDIS_URL, decode_responses=True)

bearer = HTTPBearer(auto_error=False)


def get_redis():
    return redis


@dataclass
class Principal:
    id: str
    role: str
    name: str = ""
    email: str = ""
    participant_type: Optional[str] = None

    def as_participant(self) -> Participant:
        return Participant(
            user_id=self.id,
            name=self.name,
            email=self.email,
            participant_type=self.participant_type,
        )


def get_principal(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Principal:
    """Trust whatever the auth service signed: sub, role and profile claims."""
    if creds is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        claims = verify_principal_token(creds.credentials, SECRET)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Principal(
        id=claims["sub"],
        role=claims["role"],
        name=claims.get("name", ""),
        email=claims.get("email", ""),
        participant_type=claims.get("participant_type"),
    )


def require_role(role: str):
    def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role != role:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{role} role required")
        return principal
    return dependency
