"""
Access engine configuration.

Settings are plain pydantic models so they can be built in code (tests)
or loaded from ``TIERVAULT_*`` environment variables in production.
"""

import os
import secrets
from pathlib import Path
from typing import Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "TIERVAULT_"


def load_jwt_secret(secret_file: Path) -> Optional[str]:
    """Load JWT secret from file."""
    try:
        if secret_file.exists():
            return secret_file.read_text().strip() or None
        logger.error(f"JWT secret file not found: {secret_file}")
        return None
    except OSError as e:
        logger.error(f"Failed to load JWT secret: {e}")
        return None


class AccessSettings(BaseModel):
    """
    Tunables for the authorization engine.

    Attributes:
        jwt_secret: Secret used to sign bearer tokens
        jwt_algorithm: JWT signing algorithm
        token_expire_days: Validity window of issued tokens
        max_tier_level: Lowest authority tier that exists
        global_view_tier: Tiers at or above this see the whole organization tree
        admin_tier: Tiers at or above this may read access logs and statistics
        default_department: Department of the bootstrap user when none is given
        default_code_expiry_days: Access code lifetime when none is requested
        max_code_expiry_days: Longest lifetime an access code may have
        max_code_uses: Largest use budget an access code may have
        code_length: Characters in a generated access code
        code_generation_attempts: Retries when a generated code collides
        storage_timeout: Seconds a store call may wait before failing
        bcrypt_rounds: bcrypt cost factor
    """
    jwt_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(64), min_length=16)
    jwt_algorithm: str = "HS256"
    token_expire_days: int = Field(default=7, ge=1)
    max_tier_level: int = Field(default=10, ge=1)
    global_view_tier: int = Field(default=2, ge=1)
    admin_tier: int = Field(default=2, ge=1)
    default_department: str = "Administration"
    default_code_expiry_days: int = Field(default=30, ge=1)
    max_code_expiry_days: int = Field(default=365, ge=1)
    max_code_uses: int = Field(default=1000, ge=1)
    code_length: int = Field(default=8, ge=6, le=64)
    code_generation_attempts: int = Field(default=5, ge=1)
    storage_timeout: float = Field(default=5.0, gt=0)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    @model_validator(mode="after")
    def _check_code_expiry(self) -> "AccessSettings":
        if self.default_code_expiry_days > self.max_code_expiry_days:
            raise ValueError("default_code_expiry_days exceeds max_code_expiry_days")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AccessSettings":
        """
        Build settings from ``TIERVAULT_*`` environment variables.

        ``TIERVAULT_JWT_SECRET`` wins over ``TIERVAULT_JWT_SECRET_FILE``.
        Without either, a random secret is generated and tokens will not
        survive a restart.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Returns:
            AccessSettings instance
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                values[name] = environ[key]

        if "jwt_secret" not in values:
            secret_file = environ.get(ENV_PREFIX + "JWT_SECRET_FILE")
            secret = load_jwt_secret(Path(secret_file)) if secret_file else None
            if secret:
                values["jwt_secret"] = secret
            else:
                logger.warning("No JWT secret configured, generating an ephemeral one")

        return cls(**values)
