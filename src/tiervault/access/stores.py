"""
Store contracts.

Abstract interfaces the authorization engine depends on. Each store is
responsible for its own thread safety and for making every method a
single atomic step; the engine never holds a lock across store calls.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import BinaryIO, List, Optional

from .models import (
    AccessCode,
    CodeRedemption,
    Document,
    DocumentAccess,
    User,
)


class IdentityStore(ABC):
    """Durable user records and the parent/child hierarchy."""

    @abstractmethod
    def count_users(self) -> int:
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]:
        pass

    @abstractmethod
    def insert_user(self, user: User) -> User:
        """
        Insert a user whose parent already exists.

        Raises:
            DuplicateIdentity: If the username is taken
            InvalidParameter: If ``parent_user_id`` references no existing user
        """
        pass

    @abstractmethod
    def insert_root_user(self, user: User) -> User:
        """
        Insert the first user, atomically checking the store is empty.

        Raises:
            AccessCodeRequired: If any user already exists
        """
        pass

    @abstractmethod
    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        pass

    @abstractmethod
    def touch_last_login(self, user_id: str, when: datetime) -> None:
        pass

    @abstractmethod
    def list_users(self, min_tier_level: int = 1, active_only: bool = True) -> List[User]:
        """Users with ``tier_level >= min_tier_level``, ordered by tier then full name."""
        pass

    @abstractmethod
    def list_children(self, parent_user_id: str, active_only: bool = True) -> List[User]:
        """Direct children ordered by tier then full name."""
        pass


class AccessCodeLedger(ABC):
    """Durable invitation codes with atomic consumption accounting."""

    @abstractmethod
    def insert_code(self, access_code: AccessCode) -> AccessCode:
        """
        Raises:
            DuplicateAccessCode: If the code string already exists
        """
        pass

    @abstractmethod
    def get_code(self, code: str) -> Optional[AccessCode]:
        pass

    @abstractmethod
    def list_codes_by_issuer(self, issuer_id: str) -> List[AccessCode]:
        """Codes issued by a user, newest first."""
        pass

    @abstractmethod
    def count_codes(self, redeemable_at: Optional[datetime] = None) -> int:
        """Count all codes, or only those redeemable at the given instant."""
        pass

    @abstractmethod
    def redeem(self, code: str, user: User, now: datetime) -> AccessCode:
        """
        Consume one use of ``code`` and insert ``user`` in one atomic step.

        The redeemability check, the user insert, the use-counter increment
        and the redemption record either all happen or none do.

        Returns:
            The access code after the increment

        Raises:
            InvalidOrExpiredCode: If the code is unknown, exhausted or expired
            DuplicateIdentity: If the username is taken
        """
        pass

    @abstractmethod
    def list_redemptions(self, code: str) -> List[CodeRedemption]:
        pass


class DocumentCatalog(ABC):
    """Durable document metadata with soft-delete state."""

    @abstractmethod
    def insert_document(self, document: Document) -> Document:
        pass

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        """Return the record whether or not it is active."""
        pass

    @abstractmethod
    def list_active_documents(self, viewer_tier: Optional[int] = None) -> List[Document]:
        """
        Active documents, newest upload first.

        Args:
            viewer_tier: Only documents a user of this tier may view
        """
        pass

    @abstractmethod
    def deactivate_document(self, document_id: str) -> bool:
        pass

    @abstractmethod
    def count_active_by_uploader(self, uploader_id: str) -> int:
        pass


class AccessAuditLog(ABC):
    """Append-only record of document accesses."""

    @abstractmethod
    def append(self, access: DocumentAccess) -> DocumentAccess:
        pass

    @abstractmethod
    def query(
        self,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[DocumentAccess]:
        """Matching entries, newest first. Naive ``since``/``until`` are read as UTC."""
        pass

    @abstractmethod
    def count(self, since: Optional[datetime] = None) -> int:
        pass


class BlobStore(ABC):
    """Bulk byte storage addressed by opaque references."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Durably store ``data`` and return its reference."""
        pass

    @abstractmethod
    def exists(self, ref: str) -> bool:
        pass

    @abstractmethod
    def open(self, ref: str) -> BinaryIO:
        """
        Raises:
            NotFound: If nothing is stored under ``ref``
        """
        pass
