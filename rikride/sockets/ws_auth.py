"""
WebSocket Authentication Utility
Handles JWT authentication for WebSocket connections
"""

import logging
from typing import Optional

from fastapi import WebSocket, status

from rikride.utils.jwt_utils import verify_token

logger = logging.getLogger(__name__)


async def authenticate_websocket(websocket: WebSocket) -> Optional[dict]:
    """
    Authenticate WebSocket connection using JWT token

    The token is read from the `token` query parameter, then from a Bearer
    authorization header. On failure the socket is closed with a policy
    violation and None is returned.

    Returns:
        {"user_id", "email", "role"} or None
    """
    token = websocket.query_params.get("token")

    if not token:
        auth_header = websocket.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ")[1]

    if not token:
        logger.warning("WebSocket connection rejected: missing authentication token")
        await websocket.close(
            code=status.WS_1008_POLICY_VIOLATION, reason="Missing authentication token"
        )
        return None

    payload = verify_token(token)
    if payload is None:
        logger.warning("WebSocket connection rejected: invalid or expired token")
        await websocket.close(
            code=status.WS_1008_POLICY_VIOLATION, reason="Invalid or expired token"
        )
        return None

    user_id = payload.get("user_id")
    role = payload.get("role")

    if not user_id or not role:
        logger.warning("WebSocket connection rejected: invalid token payload")
        await websocket.close(
            code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token payload"
        )
        return None

    logger.info(f"WebSocket authenticated: user_id={user_id}, role={role}")
    return {"user_id": user_id, "email": payload.get("email"), "role": role}
