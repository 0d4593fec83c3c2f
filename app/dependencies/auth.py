from typing import AsyncIterator

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from app.config import settings
from app.clients.crm import CRMClient, CRMResponseError, CRMUnavailableError
from app.utils.retry import CircuitBreakerOpenException

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


async def get_token(token: str = Depends(oauth2_scheme)) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise credentials_exception
    if not (payload.get("userId") or payload.get("sub")):
        raise credentials_exception
    return token


async def get_crm_client(token: str = Depends(get_token)) -> AsyncIterator[CRMClient]:
    """CRM client acting on behalf of the caller, closed after the request."""
    async with CRMClient(token=token) as client:
        yield client


async def get_current_user(client: CRMClient = Depends(get_crm_client)) -> dict:
    # The CRM API owns users and permissions; the token alone is not enough.
    try:
        user = await client.get_profile()
    except CRMResponseError as e:
        status_code = e.status_code if e.status_code in (401, 403) else status.HTTP_401_UNAUTHORIZED
        raise HTTPException(status_code=status_code, detail="User verification failed")
    except (CRMUnavailableError, CircuitBreakerOpenException):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRM service unavailable")
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User verification failed")
    if user.get("isActive") is False:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is disabled")
    return user


def require_permission(permission: str):
    async def checker(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") == "admin":
            return current_user
        if permission not in (current_user.get("permissions") or []):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user
    checker.__name__ = f"require_{permission}"
    return checker
