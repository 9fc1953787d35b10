from typing import AsyncIterator, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..errors import TaskUserNotFoundError
from ..schemas.timesheets import Actor
from ..services.list_store import ListStoreClient
from ..services.task_users import get_user_by_email


http_bearer = HTTPBearer(auto_error=False)

IDENTITY_CLAIMS = ("upn", "email", "preferred_username", "unique_name")


def get_bearer_token(creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)) -> str:
    if creds is None or not creds.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return creds.credentials


def decode_token(token: str) -> dict:
    # The list store validates the signature on every call; here the token is
    # only read for the caller's identity.
    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def identity_from_claims(payload: dict) -> str:
    for claim in IDENTITY_CLAIMS:
        value = payload.get(claim)
        if value:
            return str(value)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no user identity")


async def get_store_client(token: str = Depends(get_bearer_token)) -> AsyncIterator[ListStoreClient]:
    client = ListStoreClient(token)
    try:
        yield client
    finally:
        await client.aclose()


async def get_current_actor(
    token: str = Depends(get_bearer_token),
    client: ListStoreClient = Depends(get_store_client),
) -> Actor:
    email = identity_from_claims(decode_token(token))
    try:
        return await get_user_by_email(client, email)
    except TaskUserNotFoundError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is not a task user")
