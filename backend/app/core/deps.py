from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from app.core.capabilities import Actor, Capability, parse_role
from app.core.security import decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


async def get_current_actor(
    token: Annotated[str, Depends(oauth2_scheme)],
) -> Actor:
    """Validate the bearer JWT and return the Actor with its capability set."""
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token)
        if payload.get("type") != "access":
            raise credentials_exc
        subject: str | None = payload.get("sub")
        if not subject:
            raise credentials_exc
    except JWTError:
        raise credentials_exc

    role = parse_role(payload.get("role"))
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{payload.get('role')}' is not recognised.",
        )
    return Actor.for_role(subject, role, vendor_id=payload.get("vendor_id"))


def require_capability(capability: Capability):
    """Dependency factory — raises 403 if the actor lacks the capability."""
    async def check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.can(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{actor.role.value}' is not permitted to {capability.value.replace('_', ' ')}.",
            )
        return actor
    return check
