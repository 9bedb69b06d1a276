"""
In-memory reference stores.

Thread-safe implementation of every store contract, backed by dicts.
All operations are serialized by one ``threading.RLock`` acquired with
a bounded timeout, so registration's user insert and code increment
happen under the same lock.
"""

import io
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import BinaryIO, Dict, Iterator, List, Optional

from loguru import logger

from .errors import (
    AccessCodeRequired,
    DuplicateAccessCode,
    DuplicateIdentity,
    InvalidOrExpiredCode,
    InvalidParameter,
    NotFound,
    StorageUnavailable,
)
from .models import AccessCode, CodeRedemption, Document, DocumentAccess, User, as_utc
from .stores import (
    AccessAuditLog,
    AccessCodeLedger,
    BlobStore,
    DocumentCatalog,
    IdentityStore,
)


def _user_order(user: User):
    return (user.tier_level, user.full_name)


class MemoryDatabase(IdentityStore, AccessCodeLedger, DocumentCatalog, AccessAuditLog):
    """
    Dict-backed store for users, access codes, documents and access events.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, timeout: float = 5.0):
        """
        Initialize database.

        Args:
            timeout: Seconds to wait for the store lock before failing
        """
        self.timeout = timeout
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._usernames: Dict[str, str] = {}
        self._codes: Dict[str, AccessCode] = {}
        self._redemptions: List[CodeRedemption] = []
        self._documents: Dict[str, Document] = {}
        self._accesses: List[DocumentAccess] = []

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            logger.error(f"In-memory store lock not acquired within {self.timeout}s")
            raise StorageUnavailable("storage did not respond in time")
        try:
            yield
        finally:
            self._lock.release()

    # ========================================================================
    # IdentityStore
    # ========================================================================

    def count_users(self) -> int:
        with self._locked():
            return len(self._users)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked():
            user = self._users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._locked():
            user_id = self._usernames.get(username)
            return replace(self._users[user_id]) if user_id else None

    def _insert_user(self, user: User) -> User:
        if user.username in self._usernames:
            raise DuplicateIdentity(f"username '{user.username}' is already taken")
        if user.parent_user_id is not None and user.parent_user_id not in self._users:
            raise InvalidParameter("parent user does not exist")
        self._users[user.user_id] = replace(user)
        self._usernames[user.username] = user.user_id
        return replace(user)

    def insert_user(self, user: User) -> User:
        with self._locked():
            return self._insert_user(user)

    def insert_root_user(self, user: User) -> User:
        with self._locked():
            if self._users:
                raise AccessCodeRequired("an access code is required to register")
            return self._insert_user(user)

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._locked():
            user = self._users.get(user_id)
            if not user:
                return False
            user.is_active = is_active
            return True

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._locked():
            user = self._users.get(user_id)
            if user:
                user.last_login = when

    def list_users(self, min_tier_level: int = 1, active_only: bool = True) -> List[User]:
        with self._locked():
            users = [
                replace(u) for u in self._users.values()
                if u.tier_level >= min_tier_level and (u.is_active or not active_only)
            ]
        return sorted(users, key=_user_order)

    def list_children(self, parent_user_id: str, active_only: bool = True) -> List[User]:
        with self._locked():
            users = [
                replace(u) for u in self._users.values()
                if u.parent_user_id == parent_user_id and (u.is_active or not active_only)
            ]
        return sorted(users, key=_user_order)

    # ========================================================================
    # AccessCodeLedger
    # ========================================================================

    def insert_code(self, access_code: AccessCode) -> AccessCode:
        with self._locked():
            if access_code.code in self._codes:
                raise DuplicateAccessCode(f"access code {access_code.code} already exists")
            self._codes[access_code.code] = replace(access_code)
            return replace(access_code)

    def get_code(self, code: str) -> Optional[AccessCode]:
        with self._locked():
            access_code = self._codes.get(code)
            return replace(access_code) if access_code else None

    def list_codes_by_issuer(self, issuer_id: str) -> List[AccessCode]:
        with self._locked():
            codes = [replace(c) for c in self._codes.values() if c.issuer_id == issuer_id]
        return sorted(codes, key=lambda c: c.created_at, reverse=True)

    def count_codes(self, redeemable_at: Optional[datetime] = None) -> int:
        with self._locked():
            if redeemable_at is None:
                return len(self._codes)
            return sum(1 for c in self._codes.values() if c.is_redeemable(redeemable_at))

    def redeem(self, code: str, user: User, now: datetime) -> AccessCode:
        with self._locked():
            access_code = self._codes.get(code)
            if not access_code or not access_code.is_redeemable(now):
                raise InvalidOrExpiredCode("invalid or expired access code")

            # Insert first: a failed insert leaves the counter untouched.
            self._insert_user(user)

            access_code.current_uses += 1
            access_code.used_by_user_id = user.user_id
            access_code.used_date = now
            self._redemptions.append(CodeRedemption(code=code, user_id=user.user_id, redeemed_at=now))
            return replace(access_code)

    def list_redemptions(self, code: str) -> List[CodeRedemption]:
        with self._locked():
            return [replace(r) for r in self._redemptions if r.code == code]

    # ========================================================================
    # DocumentCatalog
    # ========================================================================

    def insert_document(self, document: Document) -> Document:
        with self._locked():
            self._documents[document.document_id] = replace(document)
            return replace(document)

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._locked():
            document = self._documents.get(document_id)
            return replace(document) if document else None

    def list_active_documents(self, viewer_tier: Optional[int] = None) -> List[Document]:
        with self._locked():
            documents = [
                replace(d) for d in self._documents.values()
                if d.is_active and (viewer_tier is None or viewer_tier <= d.minimum_tier_level)
            ]
        return sorted(documents, key=lambda d: d.upload_date, reverse=True)

    def deactivate_document(self, document_id: str) -> bool:
        with self._locked():
            document = self._documents.get(document_id)
            if not document:
                return False
            document.is_active = False
            return True

    def count_active_by_uploader(self, uploader_id: str) -> int:
        with self._locked():
            return sum(
                1 for d in self._documents.values()
                if d.is_active and d.uploaded_by == uploader_id
            )

    # ========================================================================
    # AccessAuditLog
    # ========================================================================

    def append(self, access: DocumentAccess) -> DocumentAccess:
        with self._locked():
            self._accesses.append(replace(access))
            return replace(access)

    def query(
        self,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[DocumentAccess]:
        since = as_utc(since) if since else None
        until = as_utc(until) if until else None
        with self._locked():
            matches = [
                replace(a) for a in self._accesses
                if (document_id is None or a.document_id == document_id)
                and (user_id is None or a.user_id == user_id)
                and (since is None or a.accessed_at >= since)
                and (until is None or a.accessed_at <= until)
            ]
        matches.sort(key=lambda a: a.accessed_at, reverse=True)
        end = None if limit is None else offset + limit
        return matches[offset:end]

    def count(self, since: Optional[datetime] = None) -> int:
        since = as_utc(since) if since else None
        with self._locked():
            return sum(1 for a in self._accesses if since is None or a.accessed_at >= since)


class MemoryBlobStore(BlobStore):
    """Blob store keeping content in a dict keyed by random references."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}

    def put(self, data: bytes) -> str:
        ref = uuid.uuid4().hex
        with self._lock:
            self._blobs[ref] = bytes(data)
        return ref

    def exists(self, ref: str) -> bool:
        with self._lock:
            return ref in self._blobs

    def open(self, ref: str) -> BinaryIO:
        with self._lock:
            data = self._blobs.get(ref)
        if data is None:
            raise NotFound("Physical file not found")
        return io.BytesIO(data)

    def discard(self, ref: str) -> None:
        """Drop a blob, simulating content lost behind the catalog's back."""
        with self._lock:
            self._blobs.pop(ref, None)
