"""
Access-control data models.

Data classes for users, access codes, code redemptions, documents,
and document access events.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def as_utc(value: datetime) -> datetime:
    """Express ``value`` in UTC, reading a naive datetime as UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccessType(str, Enum):
    """Kind of document access recorded in the audit log."""
    VIEW = "View"
    DOWNLOAD = "Download"


class AccessCodeStatus(str, Enum):
    """Redemption state of an access code."""
    ACTIVE = "active"           # uses < max, not expired
    EXHAUSTED = "exhausted"     # uses == max
    EXPIRED = "expired"         # now >= expiry_date


@dataclass
class User:
    """
    Organization member.

    Attributes:
        user_id: Unique user identifier (UUID)
        username: Unique username
        password_hash: Bcrypt hashed password
        email: User email address
        full_name: Display name
        department: Department the user belongs to
        tier_level: Authority rank, 1 is the highest authority
        created_at: Account creation timestamp
        parent_user_id: Issuer of the access code that admitted this user
        is_active: Whether account is active
        last_login: Last successful login
    """
    user_id: str
    username: str
    password_hash: str
    email: str
    full_name: str
    department: str
    tier_level: int
    created_at: datetime
    parent_user_id: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None


@dataclass
class AccessCode:
    """
    Invitation code admitting new users at a fixed tier and department.

    Attributes:
        code: Unique code string
        issuer_id: User who minted the code
        target_tier_level: Tier assigned to users registering with the code
        department: Department assigned to users registering with the code
        max_uses: Number of registrations the code admits
        expiry_date: Instant after which the code is no longer redeemable
        created_at: Creation timestamp
        current_uses: Registrations admitted so far
        used_by_user_id: Most recent consumer
        used_date: Most recent redemption time
    """
    code: str
    issuer_id: str
    target_tier_level: int
    department: str
    max_uses: int
    expiry_date: datetime
    created_at: datetime
    current_uses: int = 0
    used_by_user_id: Optional[str] = None
    used_date: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.current_uses >= self.max_uses

    def is_redeemable(self, now: datetime) -> bool:
        """Check whether the code can admit one more user at ``now``."""
        return (
            not self.is_used
            and now < self.expiry_date
            and self.current_uses < self.max_uses
        )

    def status(self, now: datetime) -> AccessCodeStatus:
        if self.is_used:
            return AccessCodeStatus.EXHAUSTED
        if now >= self.expiry_date:
            return AccessCodeStatus.EXPIRED
        return AccessCodeStatus.ACTIVE


@dataclass
class CodeRedemption:
    """One successful use of an access code."""
    code: str
    user_id: str
    redeemed_at: datetime


@dataclass
class Document:
    """
    Catalogued document metadata.

    The bytes live in a blob store; ``blob_ref`` points at them and
    ``file_hash`` is the base64 SHA-256 of the content at upload time.
    A user may view the document iff ``user.tier_level <= minimum_tier_level``.
    """
    document_id: str
    file_name: str
    file_hash: str
    file_size: int
    content_type: str
    blob_ref: str
    uploaded_by: str
    upload_date: datetime
    minimum_tier_level: int
    category: str = ""
    description: str = ""
    is_confidential: bool = False
    is_active: bool = True


@dataclass
class DocumentAccess:
    """Append-only audit fact: a user viewed or downloaded a document."""
    access_id: str
    document_id: str
    user_id: str
    access_type: AccessType
    accessed_at: datetime


@dataclass
class AccessCodeRecord:
    """Access code together with every redemption it has admitted."""
    access_code: AccessCode
    redemptions: List[CodeRedemption] = field(default_factory=list)
