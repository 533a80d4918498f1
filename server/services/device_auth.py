"""Device credential validation with JWT handling."""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

from jose import jwt, JWTError

from core.config import Settings
from core.logging import get_logger
from services.realtime.exceptions import Unauthenticated

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeviceIdentity:
    """Validated device behind a bearer credential."""
    device_id: str
    user_id: str


def extract_bearer(authorization: Optional[str] = None, token: Optional[str] = None) -> Optional[str]:
    """Pick the credential from an ``Authorization: Bearer`` header or ``token`` query param.

    The header wins when both are present.
    """
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if token and token.strip():
        return token.strip()
    return None


class DeviceAuthService:
    """Validates device bearer tokens issued by the pairing service.

    Tokens are HS256 JWTs with ``deviceId``, ``userId``, ``type`` and ``exp``.
    Validation is pure: no lookups, no side effects.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._algorithm = settings.jwt_algorithm

    def verify_token(self, token: Optional[str]) -> DeviceIdentity:
        """Resolve a token to the device it was issued for.

        Raises:
            Unauthenticated: Same error for every failure (format, signature,
                expiry, type tag, missing claims)
        """
        if not token:
            raise Unauthenticated("missing token")

        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self._algorithm],
                options={"require_exp": True},
            )
        except JWTError as e:
            logger.debug("[Auth] Token verification failed", reason=str(e))
            raise Unauthenticated(str(e)) from None

        if payload.get("type") != self.settings.device_token_type:
            logger.debug("[Auth] Wrong token type", token_type=payload.get("type"))
            raise Unauthenticated("wrong token type")

        device_id = payload.get("deviceId")
        user_id = payload.get("userId")
        if not device_id or not user_id:
            logger.debug("[Auth] Token missing device claims")
            raise Unauthenticated("missing claims")

        return DeviceIdentity(device_id=str(device_id), user_id=str(user_id))

    def create_device_token(
        self,
        device_id: str,
        user_id: str,
        expires_in: Optional[timedelta] = None,
    ) -> str:
        """Mint a device token, mirroring what the pairing service issues."""
        now = datetime.now(timezone.utc)
        expire = now + (expires_in or timedelta(minutes=self.settings.jwt_expire_minutes))
        payload = {
            "deviceId": device_id,
            "userId": user_id,
            "type": self.settings.device_token_type,
            "exp": expire,
            "iat": now,
        }
        return jwt.encode(payload, self.settings.jwt_secret_key, algorithm=self._algorithm)
