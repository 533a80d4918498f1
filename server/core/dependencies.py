"""FastAPI dependencies shared by the realtime routers."""

from typing import Optional

from fastapi import Header, HTTPException, Query, WebSocket, status

from core.config import Settings
from core.container import container
from core.logging import get_logger
from services.device_auth import DeviceIdentity, extract_bearer
from services.realtime.exceptions import Unauthenticated
from services.realtime.registry import SessionRegistry

logger = get_logger(__name__)


def get_settings() -> Settings:
    return container.settings()


def get_registry() -> SessionRegistry:
    return container.session_registry()


def require_device(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
) -> DeviceIdentity:
    """Resolve the calling device from the bearer header or ``token`` query param."""
    try:
        return container.device_auth().verify_token(extract_bearer(authorization, token))
    except Unauthenticated as e:
        logger.info("[Auth] Rejected HTTP request", reason=e.reason)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.public_message,
            headers={"WWW-Authenticate": "Bearer"},
        )


def authenticate_websocket(websocket: WebSocket) -> DeviceIdentity:
    """Validate a WebSocket handshake before it is accepted.

    Raises:
        Unauthenticated: Missing or invalid credential
    """
    token = extract_bearer(
        websocket.headers.get("authorization"),
        websocket.query_params.get("token"),
    )
    return container.device_auth().verify_token(token)
