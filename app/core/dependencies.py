import logging

import jwt
from fastapi import Depends, HTTPException, WebSocket
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core import config

logger = logging.getLogger(__name__)

security = HTTPBearer()


def decode_access_token(token: str) -> dict:
    """Verify a Supabase-issued access token and return its claims."""
    return jwt.decode(
        token,
        config.JWT_SIGN_KEY,
        algorithms=["HS256"],
        issuer=f"{config.SUPABASE_URL}/auth/v1",
        options={"verify_aud": False},
        leeway=60,
    )


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    token = credentials.credentials

    try:
        return decode_access_token(token)

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_actor_id(user=Depends(verify_token)) -> str:
    """The current actor is the `sub` claim of the verified token."""
    actor_id = user.get("sub")
    if not actor_id:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    return str(actor_id)


async def websocket_actor_id(websocket: WebSocket):
    """
    Resolve the actor for a WebSocket connection from `?token=`.

    Returns None after closing the socket with 4401 when the token is
    missing or invalid.
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return None
    try:
        payload = decode_access_token(token)
    except jwt.InvalidTokenError as e:
        logger.warning(f"WebSocket JWT verification failed: {e}")
        await websocket.close(code=4401)
        return None
    actor_id = payload.get("sub")
    if not actor_id:
        await websocket.close(code=4401)
        return None
    return str(actor_id)
