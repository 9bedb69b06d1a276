"""
Authorization engine.

Combines the identity, access-code, document and audit stores with the
token issuer and password hasher to provide:
- registration (bootstrap and access-code admission)
- access-code issuance
- document visibility, viewing, download, upload and soft delete
- organization queries and user deactivation
- login, token authentication, access logs and statistics
"""

import secrets
import uuid
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Type, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from .blobs import CHUNK_SIZE, LocalBlobStore, compute_file_hash, compute_stream_hash
from .config import AccessSettings
from .credentials import BcryptHasher
from .database import SQLiteDatabase
from .errors import (
    AccessCodeRequired,
    DuplicateAccessCode,
    DuplicateIdentity,
    Forbidden,
    InvalidOrExpiredCode,
    InvalidParameter,
    NotFound,
    StorageUnavailable,
    Unauthenticated,
)
from .jwt_handler import TokenIssuer
from .memory import MemoryBlobStore, MemoryDatabase
from .models import (
    AccessCode,
    AccessCodeRecord,
    AccessType,
    Document,
    DocumentAccess,
    User,
    as_utc,
)
from .permissions import TierPolicy, can_view
from .requests import AccessCodeRequest, RegisterRequest, UploadRequest
from .results import (
    AccessLogEntry,
    AuthResult,
    DocumentView,
    DownloadResult,
    OrgNode,
    Profile,
    Statistics,
    SubordinateInfo,
    UserView,
)
from .stores import AccessAuditLog, AccessCodeLedger, BlobStore, DocumentCatalog, IdentityStore

# No 0/O or 1/I so codes survive being read aloud.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECENT_WINDOW = timedelta(days=7)
MAX_LOG_PAGE_SIZE = 500

RequestT = TypeVar("RequestT", bound=BaseModel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse(model: Type[RequestT], request: Union[RequestT, Mapping[str, Any]]) -> RequestT:
    if isinstance(request, model):
        return request
    try:
        return model.model_validate(request)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidParameter(details) from e


class AuthorizationEngine:
    """
    Access-control decisions over the four entity stores.

    The engine holds no mutable state of its own; every operation reads
    and writes through the store contracts, whose methods are atomic.
    """

    def __init__(
        self,
        identities: IdentityStore,
        codes: AccessCodeLedger,
        documents: DocumentCatalog,
        audit: AccessAuditLog,
        blobs: BlobStore,
        settings: Optional[AccessSettings] = None,
        tokens: Optional[TokenIssuer] = None,
        hasher: Optional[BcryptHasher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize engine.

        Args:
            identities: User store
            codes: Access-code ledger
            documents: Document catalog
            audit: Access audit log
            blobs: Byte storage for uploaded content
            settings: Engine settings (defaults to ``AccessSettings()``)
            tokens: Token issuer (built from settings when omitted)
            hasher: Password hasher (built from settings when omitted)
            clock: Returns the current UTC time
        """
        self.settings = settings or AccessSettings()
        self.identities = identities
        self.codes = codes
        self.documents = documents
        self.audit = audit
        self.blobs = blobs
        self.tokens = tokens or TokenIssuer(
            self.settings.jwt_secret,
            algorithm=self.settings.jwt_algorithm,
            expire_days=self.settings.token_expire_days,
        )
        self.hasher = hasher or BcryptHasher(self.settings.bcrypt_rounds)
        self.policy = TierPolicy(self.settings)
        self.clock = clock

    @classmethod
    def in_memory(cls, settings: Optional[AccessSettings] = None, **kwargs) -> "AuthorizationEngine":
        """Engine over the in-memory reference stores."""
        settings = settings or AccessSettings()
        db = MemoryDatabase(timeout=settings.storage_timeout)
        return cls(db, db, db, db, MemoryBlobStore(), settings=settings, **kwargs)

    @classmethod
    def open(
        cls,
        db_path: Path,
        blob_root: Path,
        settings: Optional[AccessSettings] = None,
        **kwargs,
    ) -> "AuthorizationEngine":
        """Engine over a SQLite database and a directory of uploaded files."""
        settings = settings or AccessSettings()
        db = SQLiteDatabase(db_path, timeout=settings.storage_timeout)
        return cls(db, db, db, db, LocalBlobStore(blob_root), settings=settings, **kwargs)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _require_user(self, user_id: str) -> User:
        user = self.identities.get_user(user_id)
        if not user:
            raise NotFound("User not found.")
        return user

    def _require_actor(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if not user.is_active:
            logger.warning(f"Rejected request from deactivated user {user.username}")
            raise Forbidden("your account has been deactivated")
        return user

    def _require_active_document(self, document_id: str) -> Document:
        document = self.documents.get_document(document_id)
        if not document or not document.is_active:
            raise NotFound("Document not found.")
        return document

    def _issue_token(self, user: User) -> str:
        return self.tokens.issue(user.user_id, user.username, user.tier_level, user.department)

    def _new_code(self) -> str:
        return "".join(secrets.choice(CODE_ALPHABET) for _ in range(self.settings.code_length))

    def _document_views(self, documents: List[Document]) -> List[DocumentView]:
        uploaders: Dict[str, Optional[User]] = {}
        views = []
        for document in documents:
            if document.uploaded_by not in uploaders:
                uploaders[document.uploaded_by] = self.identities.get_user(document.uploaded_by)
            uploader = uploaders[document.uploaded_by]
            views.append(DocumentView(
                document=document,
                uploaded_by_name=uploader.full_name if uploader else "",
                uploaded_by_department=uploader.department if uploader else "",
            ))
        return views

    def _authorize_document(self, user_id: str, document_id: str) -> Tuple[User, Document]:
        user = self._require_actor(user_id)
        document = self._require_active_document(document_id)
        if not can_view(user.tier_level, document.minimum_tier_level):
            logger.warning(
                f"Access denied: {user.username} (tier {user.tier_level}) -> "
                f"document {document_id} (tier {document.minimum_tier_level})"
            )
            raise Forbidden(
                "You don't have permission to access this document: "
                f"requires tier {document.minimum_tier_level} or above"
            )
        return user, document

    def _record_access(self, user: User, document: Document, access_type: AccessType) -> None:
        self.audit.append(DocumentAccess(
            access_id=str(uuid.uuid4()),
            document_id=document.document_id,
            user_id=user.user_id,
            access_type=access_type,
            accessed_at=self.clock(),
        ))
        logger.debug(f"{access_type.value} of {document.document_id} by {user.username} recorded")

    # ========================================================================
    # Registration and authentication
    # ========================================================================

    def register(self, request: Union[RegisterRequest, Mapping[str, Any]]) -> AuthResult:
        """
        Register a new user.

        Without an access code the store must be empty and the user
        becomes the tier 1 root. With a code the user is admitted at the
        code's tier and department under the code's issuer, and one use
        of the code is consumed in the same atomic step as the insert.

        Raises:
            DuplicateIdentity: If the username is taken
            AccessCodeRequired: If no code is given and users already exist
            InvalidOrExpiredCode: If the code is unknown, exhausted or expired
            InvalidParameter: If the request fails validation
        """
        request = _parse(RegisterRequest, request)

        if self.identities.get_user_by_username(request.username):
            logger.warning(f"Registration failed: username '{request.username}' taken")
            raise DuplicateIdentity(f"username '{request.username}' is already taken")

        now = self.clock()

        if request.access_code is None:
            if self.identities.count_users() > 0:
                logger.warning(f"Registration failed: '{request.username}' has no access code")
                raise AccessCodeRequired("an access code is required to register")

            user = User(
                user_id=str(uuid.uuid4()),
                username=request.username,
                password_hash=self.hasher.hash(request.password),
                email=request.email,
                full_name=request.full_name,
                department=request.department or self.settings.default_department,
                tier_level=1,
                created_at=now,
            )
            try:
                self.identities.insert_root_user(user)
            except AccessCodeRequired:
                logger.warning(f"Registration failed: '{request.username}' lost the bootstrap race")
                raise
            logger.info(f"Root user created: {user.username} ({user.user_id})")
        else:
            access_code = self.codes.get_code(request.access_code)
            if not access_code or not access_code.is_redeemable(now):
                logger.warning(f"Registration failed: code {request.access_code} not redeemable")
                raise InvalidOrExpiredCode("invalid or expired access code")

            user = User(
                user_id=str(uuid.uuid4()),
                username=request.username,
                password_hash=self.hasher.hash(request.password),
                email=request.email,
                full_name=request.full_name,
                department=access_code.department,
                tier_level=access_code.target_tier_level,
                created_at=now,
                parent_user_id=access_code.issuer_id,
            )
            try:
                access_code = self.codes.redeem(access_code.code, user, self.clock())
            except InvalidOrExpiredCode:
                logger.warning(f"Registration failed: code {request.access_code} consumed concurrently")
                raise
            logger.info(
                f"User created: {user.username} ({user.user_id}) at tier {user.tier_level} "
                f"via code {access_code.code} ({access_code.current_uses}/{access_code.max_uses})"
            )

        return AuthResult(token=self._issue_token(user), user=UserView.from_user(user))

    def login(self, username: str, password: str) -> AuthResult:
        """
        Authenticate with username and password.

        Raises:
            Unauthenticated: If the user is unknown, inactive, or the password is wrong
        """
        user = self.identities.get_user_by_username(username)
        if not user:
            logger.warning(f"Login failed: user '{username}' not found")
            raise Unauthenticated("invalid username or password")

        if not user.is_active:
            logger.warning(f"Login failed: user '{username}' is inactive")
            raise Unauthenticated("account is disabled")

        if not self.hasher.verify(password, user.password_hash):
            logger.warning(f"Login failed: invalid password for '{username}'")
            raise Unauthenticated("invalid username or password")

        user.last_login = self.clock()
        self.identities.touch_last_login(user.user_id, user.last_login)

        logger.success(f"User logged in: {username}")
        return AuthResult(token=self._issue_token(user), user=UserView.from_user(user))

    def authenticate(self, token: str) -> UserView:
        """
        Resolve a bearer token to its active user.

        Tier and department are read from the store, not the token, so a
        deactivation takes effect before the token expires.

        Raises:
            Unauthenticated: If the token is invalid or the account is gone or inactive
        """
        claims = self.tokens.verify(token)
        if not claims:
            raise Unauthenticated("invalid or expired token")

        user = self.identities.get_user(claims.user_id)
        if not user or not user.is_active:
            logger.warning(f"User {claims.username} is not active")
            raise Unauthenticated("user account inactive")

        logger.debug(f"User authenticated: {user.username} ({user.user_id})")
        return UserView.from_user(user)

    # ========================================================================
    # Access codes
    # ========================================================================

    def generate_access_code(
        self,
        issuer_id: str,
        request: Union[AccessCodeRequest, Mapping[str, Any]],
    ) -> AccessCode:
        """
        Mint an access code admitting users below the issuer's tier.

        Raises:
            NotFound: If the issuer does not exist
            InsufficientAuthority: If the target tier is not strictly below the issuer's
            InvalidParameter: If tier, use budget or expiry is out of range
            StorageUnavailable: If no unique code could be allocated
        """
        request = _parse(AccessCodeRequest, request)
        issuer = self._require_actor(issuer_id)

        self.policy.require_code_issuance(issuer, request.target_tier_level)

        if request.max_uses > self.settings.max_code_uses:
            raise InvalidParameter(f"max uses cannot exceed {self.settings.max_code_uses}")

        expiry_days = request.expiry_days
        if expiry_days is None:
            expiry_days = self.settings.default_code_expiry_days
        if not 1 <= expiry_days <= self.settings.max_code_expiry_days:
            raise InvalidParameter(
                f"expiry days must be between 1 and {self.settings.max_code_expiry_days}"
            )

        now = self.clock()
        attempts = self.settings.code_generation_attempts
        for attempt in range(1, attempts + 1):
            access_code = AccessCode(
                code=self._new_code(),
                issuer_id=issuer.user_id,
                target_tier_level=request.target_tier_level,
                department=request.department or issuer.department,
                max_uses=request.max_uses,
                expiry_date=now + timedelta(days=expiry_days),
                created_at=now,
            )
            try:
                self.codes.insert_code(access_code)
            except DuplicateAccessCode:
                logger.warning(f"Access code collision, retrying ({attempt}/{attempts})")
                continue

            logger.info(
                f"Access code issued by {issuer.username}: tier {access_code.target_tier_level}, "
                f"{access_code.department}, {access_code.max_uses} use(s), {expiry_days} day(s)"
            )
            return access_code

        raise StorageUnavailable("could not allocate a unique access code")

    def list_access_codes(self, issuer_id: str) -> List[AccessCodeRecord]:
        """Every code the user issued, newest first, with each redemption."""
        issuer = self._require_actor(issuer_id)
        return [
            AccessCodeRecord(access_code=code, redemptions=self.codes.list_redemptions(code.code))
            for code in self.codes.list_codes_by_issuer(issuer.user_id)
        ]

    # ========================================================================
    # Documents
    # ========================================================================

    def list_accessible_documents(self, user_id: str) -> List[DocumentView]:
        """Active documents the user may view, newest upload first."""
        user = self._require_actor(user_id)
        return self._document_views(self.documents.list_active_documents(viewer_tier=user.tier_level))

    def can_access(self, user_id: str, document_id: str) -> bool:
        user = self.identities.get_user(user_id)
        if not user or not user.is_active:
            return False
        document = self.documents.get_document(document_id)
        if not document or not document.is_active:
            return False
        return can_view(user.tier_level, document.minimum_tier_level)

    def view_document(self, user_id: str, document_id: str) -> DocumentView:
        """
        Return document metadata and record a View access.

        Raises:
            NotFound: If the user or an active document does not exist
            Forbidden: If the user's tier is below the document's gate
        """
        user, document = self._authorize_document(user_id, document_id)
        self._record_access(user, document, AccessType.VIEW)
        return self._document_views([document])[0]

    def download_document(self, user_id: str, document_id: str) -> DownloadResult:
        """
        Open the document's bytes and record a Download access.

        Raises:
            NotFound: If the document is missing, inactive, or its file is gone
            Forbidden: If the user's tier is below the document's gate
        """
        user, document = self._authorize_document(user_id, document_id)

        if not self.blobs.exists(document.blob_ref):
            logger.error(f"Blob {document.blob_ref} missing for document {document_id}")
            raise NotFound("Physical file not found")

        stream = self.blobs.open(document.blob_ref)
        try:
            self._record_access(user, document, AccessType.DOWNLOAD)
        except Exception:
            stream.close()
            raise
        return DownloadResult(document=document, stream=stream)

    def upload_document(
        self,
        uploader_id: str,
        request: Union[UploadRequest, Mapping[str, Any]],
    ) -> Document:
        """
        Store content and catalogue it behind a minimum-tier gate.

        The blob is stored before the metadata record is written.

        Raises:
            InvalidParameter: If the gate is looser than the uploader's tier,
                out of range, or the request fails validation
        """
        request = _parse(UploadRequest, request)
        uploader = self._require_actor(uploader_id)

        minimum_tier_level = request.minimum_tier_level
        if minimum_tier_level is None:
            minimum_tier_level = uploader.tier_level
        self.policy.require_document_gate(uploader, minimum_tier_level)

        file_hash = compute_file_hash(request.content)
        blob_ref = self.blobs.put(request.content)

        document = Document(
            document_id=str(uuid.uuid4()),
            file_name=request.file_name,
            file_hash=file_hash,
            file_size=len(request.content),
            content_type=request.content_type,
            blob_ref=blob_ref,
            uploaded_by=uploader.user_id,
            upload_date=self.clock(),
            minimum_tier_level=minimum_tier_level,
            category=request.category,
            description=request.description,
            is_confidential=request.is_confidential,
        )
        self.documents.insert_document(document)

        logger.info(
            f"Document uploaded: {document.file_name} ({document.document_id}) by "
            f"{uploader.username}, tier {minimum_tier_level}+"
        )
        return document

    def delete_document(self, actor_id: str, document_id: str) -> None:
        """
        Soft-delete a document.

        Raises:
            NotFound: If the document does not exist or is already deleted
            Forbidden: If the actor is neither the uploader nor at the document's tier
        """
        actor = self._require_actor(actor_id)
        document = self._require_active_document(document_id)

        try:
            self.policy.require_delete(actor, document)
        except Forbidden:
            logger.warning(f"Delete of {document_id} denied for {actor.username}")
            raise

        self.documents.deactivate_document(document_id)
        logger.info(f"Document deleted: {document.file_name} ({document_id}) by {actor.username}")

    def verify_document_integrity(self, user_id: str, document_id: str) -> bool:
        """Re-hash the stored bytes and compare with the hash taken at upload."""
        _, document = self._authorize_document(user_id, document_id)
        with self.blobs.open(document.blob_ref) as stream:
            file_hash = compute_stream_hash(iter(lambda: stream.read(CHUNK_SIZE), b""))

        if file_hash != document.file_hash:
            logger.error(f"Integrity check failed for document {document_id}")
            return False
        return True

    # ========================================================================
    # Organization
    # ========================================================================

    def get_profile(self, user_id: str) -> Profile:
        user = self._require_actor(user_id)
        parent = self.identities.get_user(user.parent_user_id) if user.parent_user_id else None
        now = self.clock()
        return Profile(
            user=UserView.from_user(user),
            parent_name=parent.full_name if parent else None,
            subordinate_count=len(self.identities.list_children(user.user_id, active_only=False)),
            active_access_codes=[
                code for code in self.codes.list_codes_by_issuer(user.user_id)
                if code.is_redeemable(now)
            ],
        )

    def get_subordinates(self, user_id: str) -> List[SubordinateInfo]:
        """Active direct subordinates, ordered by tier then full name."""
        user = self._require_actor(user_id)
        return [
            SubordinateInfo(
                user=UserView.from_user(child),
                document_count=self.documents.count_active_by_uploader(child.user_id),
            )
            for child in self.identities.list_children(user.user_id)
        ]

    def get_organization_tree(self, user_id: str) -> List[OrgNode]:
        """
        Active users at or below the requester's authority, as a forest.

        Requesters in the global-view tiers get every root (users whose
        parent is absent or outside the visible set); everyone else gets
        a single tree rooted at themselves.
        """
        requester = self._require_actor(user_id)
        users = self.identities.list_users(min_tier_level=requester.tier_level)
        visible = {u.user_id for u in users}

        children: Dict[Optional[str], List[User]] = defaultdict(list)
        for user in users:
            parent_id = user.parent_user_id if user.parent_user_id in visible else None
            children[parent_id].append(user)

        if self.policy.has_global_view(requester.tier_level):
            roots = children[None]
        else:
            roots = [requester]

        seen: Set[str] = set()
        return [self._build_node(root, children, seen) for root in roots]

    def _build_node(
        self,
        user: User,
        children: Dict[Optional[str], List[User]],
        seen: Set[str],
    ) -> OrgNode:
        seen.add(user.user_id)
        node = OrgNode(user=UserView.from_user(user))
        for child in children.get(user.user_id, []):
            if child.user_id in seen:
                logger.error(f"Cycle in organization hierarchy at {child.user_id}, skipping")
                continue
            node.children.append(self._build_node(child, children, seen))
        return node

    def deactivate_user(self, actor_id: str, target_id: str) -> UserView:
        """
        Deactivate a user of strictly lower authority.

        Subordinates and documents are left untouched.

        Raises:
            NotFound: If either user does not exist
            Forbidden: If the target's tier is not strictly below the actor's
        """
        actor = self._require_actor(actor_id)
        target = self._require_user(target_id)

        try:
            self.policy.require_deactivate(actor, target)
        except Forbidden:
            logger.warning(f"Deactivation of {target.username} denied for {actor.username}")
            raise

        self.identities.set_user_active(target.user_id, False)
        target.is_active = False
        logger.info(f"User deactivated: {target.username} by {actor.username}")
        return UserView.from_user(target)

    # ========================================================================
    # Administration
    # ========================================================================

    def get_access_logs(
        self,
        actor_id: str,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> List[AccessLogEntry]:
        """
        Page through the access audit log, newest first.

        Naive ``from_date``/``to_date`` are taken to be UTC.

        Raises:
            Forbidden: If the actor is not in an administrative tier
            InvalidParameter: If the page or page size is out of range
        """
        actor = self._require_actor(actor_id)
        self.policy.require_admin(actor, "view access logs")

        if page < 1:
            raise InvalidParameter("page must be at least 1")
        if not 1 <= page_size <= MAX_LOG_PAGE_SIZE:
            raise InvalidParameter(f"page size must be between 1 and {MAX_LOG_PAGE_SIZE}")

        accesses = self.audit.query(
            document_id=document_id,
            user_id=user_id,
            since=as_utc(from_date) if from_date else None,
            until=as_utc(to_date) if to_date else None,
            offset=(page - 1) * page_size,
            limit=page_size,
        )

        users: Dict[str, Optional[User]] = {}
        documents: Dict[str, Optional[Document]] = {}
        entries = []
        for access in accesses:
            if access.user_id not in users:
                users[access.user_id] = self.identities.get_user(access.user_id)
            if access.document_id not in documents:
                documents[access.document_id] = self.documents.get_document(access.document_id)
            user = users[access.user_id]
            document = documents[access.document_id]
            entries.append(AccessLogEntry(
                access_id=access.access_id,
                accessed_at=access.accessed_at,
                access_type=access.access_type,
                document_id=access.document_id,
                file_name=document.file_name if document else None,
                category=document.category if document else None,
                user_id=access.user_id,
                username=user.username if user else None,
                full_name=user.full_name if user else None,
                department=user.department if user else None,
                tier_level=user.tier_level if user else None,
            ))
        return entries

    def get_statistics(self, actor_id: str) -> Statistics:
        """
        Raises:
            Forbidden: If the actor is not in an administrative tier
        """
        actor = self._require_actor(actor_id)
        self.policy.require_admin(actor, "view statistics")

        now = self.clock()
        since = now - RECENT_WINDOW
        users = self.identities.list_users()
        documents = self.documents.list_active_documents()

        categories = Counter(d.category for d in documents)
        return Statistics(
            total_users=len(users),
            total_documents=len(documents),
            total_access_codes=self.codes.count_codes(),
            active_access_codes=self.codes.count_codes(redeemable_at=now),
            recent_uploads=sum(1 for d in documents if d.upload_date >= since),
            recent_accesses=self.audit.count(since=since),
            users_by_tier=dict(sorted(Counter(u.tier_level for u in users).items())),
            documents_by_category=dict(categories.most_common(10)),
        )
