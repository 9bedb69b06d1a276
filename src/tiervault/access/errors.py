"""
Error taxonomy for access-control operations.

Every rejected operation raises a subclass of ``AccessControlError`` whose
message names the rule that was violated. The transport layer maps
``kind`` to its own status codes.
"""

from typing import Optional


class AccessControlError(Exception):
    """
    Base class for typed access-control failures.

    Attributes:
        kind: Stable error kind name (e.g. "Forbidden")
        message: Human-readable description of the violated rule
    """

    kind = "AccessControlError"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.kind
        super().__init__(self.message)


class DuplicateIdentity(AccessControlError):
    kind = "DuplicateIdentity"


class AccessCodeRequired(AccessControlError):
    kind = "AccessCodeRequired"


class InvalidOrExpiredCode(AccessControlError):
    kind = "InvalidOrExpiredCode"


class InsufficientAuthority(AccessControlError):
    kind = "InsufficientAuthority"


class InvalidParameter(AccessControlError):
    kind = "InvalidParameter"


class NotFound(AccessControlError):
    kind = "NotFound"


class Forbidden(AccessControlError):
    kind = "Forbidden"


class StorageUnavailable(AccessControlError):
    kind = "StorageUnavailable"


class Unauthenticated(AccessControlError):
    kind = "Unauthenticated"


class StorageConflict(AccessControlError):
    """Unique-key violation reported by a store."""
    kind = "StorageConflict"


class DuplicateAccessCode(StorageConflict):
    """Raised by the ledger when a generated code already exists."""
    kind = "DuplicateAccessCode"
