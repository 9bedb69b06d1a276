"""
Access-control module for tiervault.

Provides tier-gated registration, invitation codes, document
authorization and the access audit trail.
"""

from .models import (
    User,
    AccessCode,
    AccessCodeRecord,
    AccessCodeStatus,
    CodeRedemption,
    Document,
    DocumentAccess,
    AccessType,
)
from .errors import (
    AccessControlError,
    DuplicateIdentity,
    AccessCodeRequired,
    InvalidOrExpiredCode,
    InsufficientAuthority,
    InvalidParameter,
    NotFound,
    Forbidden,
    StorageUnavailable,
    StorageConflict,
    DuplicateAccessCode,
    Unauthenticated,
)
from .config import AccessSettings
from .stores import IdentityStore, AccessCodeLedger, DocumentCatalog, AccessAuditLog, BlobStore
from .memory import MemoryDatabase, MemoryBlobStore
from .database import SQLiteDatabase
from .blobs import LocalBlobStore, compute_file_hash
from .credentials import BcryptHasher
from .jwt_handler import TokenIssuer, TokenClaims
from .permissions import TierPolicy
from .requests import RegisterRequest, AccessCodeRequest, UploadRequest
from .results import (
    AuthResult,
    UserView,
    DocumentView,
    DownloadResult,
    SubordinateInfo,
    OrgNode,
    Profile,
    AccessLogEntry,
    Statistics,
)
from .engine import AuthorizationEngine

__all__ = [
    # Data models
    "User",
    "AccessCode",
    "AccessCodeRecord",
    "AccessCodeStatus",
    "CodeRedemption",
    "Document",
    "DocumentAccess",
    "AccessType",
    # Errors
    "AccessControlError",
    "DuplicateIdentity",
    "AccessCodeRequired",
    "InvalidOrExpiredCode",
    "InsufficientAuthority",
    "InvalidParameter",
    "NotFound",
    "Forbidden",
    "StorageUnavailable",
    "StorageConflict",
    "DuplicateAccessCode",
    "Unauthenticated",
    # Configuration
    "AccessSettings",
    # Stores
    "IdentityStore",
    "AccessCodeLedger",
    "DocumentCatalog",
    "AccessAuditLog",
    "BlobStore",
    "MemoryDatabase",
    "MemoryBlobStore",
    "SQLiteDatabase",
    "LocalBlobStore",
    "compute_file_hash",
    # Boundaries
    "BcryptHasher",
    "TokenIssuer",
    "TokenClaims",
    # Engine
    "TierPolicy",
    "RegisterRequest",
    "AccessCodeRequest",
    "UploadRequest",
    "AuthResult",
    "UserView",
    "DocumentView",
    "DownloadResult",
    "SubordinateInfo",
    "OrgNode",
    "Profile",
    "AccessLogEntry",
    "Statistics",
    "AuthorizationEngine",
]
