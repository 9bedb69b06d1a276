"""
Operation results handed back to the transport layer.

None of these carry credential hashes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Dict, List, Optional

from .models import AccessCode, AccessType, Document, User


@dataclass
class UserView:
    """Public snapshot of a user account."""
    user_id: str
    username: str
    email: str
    full_name: str
    department: str
    tier_level: int
    created_at: datetime
    parent_user_id: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserView":
        return cls(
            user_id=user.user_id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            department=user.department,
            tier_level=user.tier_level,
            created_at=user.created_at,
            parent_user_id=user.parent_user_id,
            is_active=user.is_active,
            last_login=user.last_login,
        )


@dataclass
class AuthResult:
    """Bearer token plus the authenticated user's profile."""
    token: str
    user: UserView


@dataclass
class DocumentView:
    """Document metadata with the uploader's display details."""
    document: Document
    uploaded_by_name: str
    uploaded_by_department: str


@dataclass
class DownloadResult:
    """
    Open stream over a document's bytes.

    The caller owns ``stream`` and must close it.
    """
    document: Document
    stream: BinaryIO


@dataclass
class SubordinateInfo:
    user: UserView
    document_count: int


@dataclass
class OrgNode:
    """One user in the organization tree with their visible subordinates."""
    user: UserView
    children: List["OrgNode"] = field(default_factory=list)


@dataclass
class Profile:
    user: UserView
    parent_name: Optional[str]
    subordinate_count: int
    active_access_codes: List[AccessCode] = field(default_factory=list)


@dataclass
class AccessLogEntry:
    """Audit entry joined with the document and user it refers to."""
    access_id: str
    accessed_at: datetime
    access_type: AccessType
    document_id: str
    file_name: Optional[str]
    category: Optional[str]
    user_id: str
    username: Optional[str]
    full_name: Optional[str]
    department: Optional[str]
    tier_level: Optional[int]


@dataclass
class Statistics:
    total_users: int
    total_documents: int
    total_access_codes: int
    active_access_codes: int
    recent_uploads: int
    recent_accesses: int
    users_by_tier: Dict[int, int]
    documents_by_category: Dict[str, int]
