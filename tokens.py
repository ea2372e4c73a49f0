"""
Tokens consumed by the chat application layer.

Chat, comment, reaction and report handlers authenticate callers only
through the verify_* functions here. Each token kind is an ES256 JWT signed
with the server key and told apart by its audience.
"""

import logging
import time
from datetime import datetime, timezone
from enum import IntEnum
from typing import Optional

from pydantic import BaseModel, ValidationError

from crypto import PrivateKeyLike, PublicKeyLike, sign_jwt, verify_jwt

logger = logging.getLogger(__name__)

USER_AUDIENCE = "flexio-chat"
SERVICE_AUDIENCE = "flexio-service"
ADMIN_AUDIENCE = "flexio-admin"

USER_TOKEN_LIFETIME = 86400 * 365  # 1 year
SERVICE_TOKEN_LIFETIME = 86400 * 30  # 30 days


class ChatRole(IntEnum):
    """Chat roles ordered from least to most privileged"""
    BLOCKED = 0
    NOT_PARTICIPATING = 1
    AUDIENCE = 2
    ENTRANT = 3
    MANAGER = 4
    OWNER = 5

    @property
    def wire_name(self) -> str:
        head, *rest = self.name.lower().split("_")
        return head + "".join(part.capitalize() for part in rest)

    @classmethod
    def parse(cls, value: str) -> "ChatRole":
        for role in cls:
            if role.wire_name == value:
                return role
        raise ValueError(f"Unknown chat role: {value}")

    def at_least(self, required: "ChatRole") -> bool:
        return self >= required


class UserToken(BaseModel):
    user_name: str
    link: str
    authority: ChatRole
    saved_time: Optional[str] = None


class ServiceToken(BaseModel):
    service_id: str
    account_id: str
    issued_at: str
    expires_at: str


class AdminToken(BaseModel):
    user_name: str
    authority: str
    period: str


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ==================== GENERATION ====================

def generate_user_token(user_name: str, link: str, authority: ChatRole,
                        private_key: PrivateKeyLike, issuer: str) -> str:
    now = int(time.time())
    return sign_jwt(
        {
            "iss": issuer,
            "sub": f"user:{user_name}",
            "aud": USER_AUDIENCE,
            "iat": now,
            "exp": now + USER_TOKEN_LIFETIME,
            "userName": user_name,
            "link": link,
            "savedTime": _iso(now),
            "authority": authority.wire_name,
        },
        private_key,
    )


def generate_service_token(account_id: str, private_key: PrivateKeyLike, issuer: str,
                           service_id: str = "flexio") -> str:
    now = int(time.time())
    expires_at = now + SERVICE_TOKEN_LIFETIME
    return sign_jwt(
        {
            "iss": issuer,
            "sub": f"service:{account_id}",
            "aud": SERVICE_AUDIENCE,
            "iat": now,
            "exp": expires_at,
            "serviceID": service_id,
            "accountID": account_id,
            "issuedAt": _iso(now),
            "expiresAt": _iso(expires_at),
        },
        private_key,
    )


def generate_admin_token(user_name: str, authority: str, period: datetime,
                         private_key: PrivateKeyLike, issuer: str) -> str:
    """Admin tokens are valid until `period`"""
    if period.tzinfo is None:
        period = period.replace(tzinfo=timezone.utc)
    return sign_jwt(
        {
            "iss": issuer,
            "sub": f"admin:{user_name}",
            "aud": ADMIN_AUDIENCE,
            "iat": int(time.time()),
            "exp": int(period.timestamp()),
            "userName": user_name,
            "authority": authority,
            "period": period.isoformat(),
        },
        private_key,
    )


# ==================== VERIFICATION ====================

def verify_user_token(token: str, public_key: PublicKeyLike) -> Optional[UserToken]:
    payload = verify_jwt(token, public_key)
    if not payload or payload.get("aud") != USER_AUDIENCE:
        return None
    try:
        return UserToken(
            user_name=payload["userName"],
            link=payload["link"],
            authority=ChatRole.parse(payload["authority"]),
            saved_time=payload.get("savedTime"),
        )
    except (KeyError, ValueError, ValidationError) as e:
        logger.warning(f"Malformed user token claims: {e}")
        return None


def verify_service_token(token: str, public_key: PublicKeyLike) -> Optional[ServiceToken]:
    payload = verify_jwt(token, public_key)
    if not payload or payload.get("aud") != SERVICE_AUDIENCE:
        return None
    try:
        if _parse_iso(payload["expiresAt"]) < datetime.now(timezone.utc):
            return None
        return ServiceToken(
            service_id=payload["serviceID"],
            account_id=payload["accountID"],
            issued_at=payload["issuedAt"],
            expires_at=payload["expiresAt"],
        )
    except (KeyError, ValueError, ValidationError) as e:
        logger.warning(f"Malformed service token claims: {e}")
        return None


def verify_admin_token(token: str, public_key: PublicKeyLike) -> Optional[AdminToken]:
    payload = verify_jwt(token, public_key)
    if not payload or payload.get("aud") != ADMIN_AUDIENCE:
        return None
    try:
        if _parse_iso(payload["period"]) < datetime.now(timezone.utc):
            return None
        return AdminToken(
            user_name=payload["userName"],
            authority=payload["authority"],
            period=payload["period"],
        )
    except (KeyError, ValueError, ValidationError) as e:
        logger.warning(f"Malformed admin token claims: {e}")
        return None
