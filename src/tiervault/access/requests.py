"""
Typed operation requests.

The transport layer builds these from whatever it parses; validation
failures are reported by the engine as ``InvalidParameter``.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RegisterRequest(BaseModel):
    """New account; ``access_code`` may be omitted only for the very first user."""

    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=6, max_length=128)
    email: str = Field(min_length=3, max_length=254)
    full_name: str = Field(min_length=1, max_length=100)
    department: str = Field(default="", max_length=100)
    access_code: Optional[str] = None

    # Passwords are taken verbatim.
    @field_validator("username", "email", "full_name", "department", "access_code", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        local, _, domain = value.partition("@")
        if not local or not domain:
            raise ValueError("email must look like name@domain")
        return value

    @field_validator("access_code")
    @classmethod
    def _blank_code_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else None


class AccessCodeRequest(BaseModel):
    """
    Invitation to mint.

    ``expiry_days`` falls back to the configured default; ``department``
    falls back to the issuer's own department.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    target_tier_level: int
    department: str = Field(default="", max_length=100)
    max_uses: int = Field(default=1, ge=1)
    expiry_days: Optional[int] = None


class UploadRequest(BaseModel):
    """
    Document upload.

    ``minimum_tier_level`` defaults to the uploader's own tier.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    file_name: str = Field(min_length=1, max_length=255)
    content: bytes
    content_type: str = "application/octet-stream"
    minimum_tier_level: Optional[int] = None
    category: str = Field(default="", max_length=100)
    description: str = Field(default="", max_length=2000)
    is_confidential: bool = False

    @field_validator("content")
    @classmethod
    def _non_empty(cls, value: bytes) -> bytes:
        if not value:
            raise ValueError("file is empty")
        return value
