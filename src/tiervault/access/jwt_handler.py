"""
Bearer tokens for authenticated sessions.

A token records who the holder is, their tier and their department at
sign-in time. The engine re-reads the account on every request, so the
embedded tier is informational only.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from loguru import logger

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 7
TOKEN_TYPE = "access"


@dataclass
class TokenClaims:
    """
    Claims recovered from a verified token.

    Attributes:
        user_id: Account the token was issued to
        username: Login name at issue time
        tier_level: Tier at issue time
        department: Department at issue time
        exp: When the token stops being accepted
        iat: When the token was signed
        jti: Random token identifier
    """
    user_id: str
    username: str
    tier_level: int
    department: str
    exp: datetime
    iat: datetime
    jti: str

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        return cls(
            user_id=payload["user_id"],
            username=payload["username"],
            tier_level=int(payload["tier_level"]),
            department=payload["department"],
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            jti=payload["jti"],
        )


class TokenIssuer:
    """
    Signs and checks session tokens with a shared secret.

    Attributes:
        secret_key: HMAC key; anyone holding it can mint tokens
        algorithm: Signing algorithm name understood by PyJWT
        expire_days: Lifetime of each issued token
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = ALGORITHM,
        expire_days: int = ACCESS_TOKEN_EXPIRE_DAYS,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_days = expire_days

    def issue(self, user_id: str, username: str, tier_level: int, department: str) -> str:
        """Sign a token for the given account, valid for ``expire_days``."""
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(days=self.expire_days)

        claims = {
            "sub": user_id,
            "user_id": user_id,
            "username": username,
            "tier_level": tier_level,
            "department": department,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_urlsafe(16),
            "type": TOKEN_TYPE,
        }
        encoded = jwt.encode(claims, self.secret_key, algorithm=self.algorithm)
        logger.debug(f"Issued session token for {username}, expires {expires_at:%Y-%m-%d}")
        return encoded

    def verify(self, token: str) -> Optional[TokenClaims]:
        """
        Check a token's signature, lifetime and shape.

        Returns:
            The token's claims, or None if it must not be trusted
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Rejected expired session token")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected session token: {e}")
            return None

        if payload.get("type") != TOKEN_TYPE:
            logger.warning(f"Rejected token of type {payload.get('type')!r}")
            return None

        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Session token is missing claims: {e}")
            return None
