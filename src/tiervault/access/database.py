"""
SQLite database for the access engine.

Durable implementation of the identity, access-code, document and audit
stores. Every multi-step write runs inside a ``BEGIN IMMEDIATE``
transaction so concurrent registrations cannot over-spend a code or
both claim the root tier.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from loguru import logger

from .errors import (
    AccessCodeRequired,
    DuplicateAccessCode,
    DuplicateIdentity,
    InvalidOrExpiredCode,
    InvalidParameter,
    StorageUnavailable,
)
from .models import (
    AccessCode,
    AccessType,
    CodeRedemption,
    Document,
    DocumentAccess,
    User,
    as_utc,
)
from .stores import AccessAuditLog, AccessCodeLedger, DocumentCatalog, IdentityStore


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Stored and compared as UTC text; fixed precision keeps it lexicographically ordered.
    return as_utc(value).isoformat(timespec="microseconds") if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        user_id=row["user_id"],
        username=row["username"],
        password_hash=row["password_hash"],
        email=row["email"],
        full_name=row["full_name"],
        department=row["department"],
        tier_level=row["tier_level"],
        created_at=_dt(row["created_at"]),
        parent_user_id=row["parent_user_id"],
        is_active=bool(row["is_active"]),
        last_login=_dt(row["last_login"]),
    )


def _row_to_code(row: sqlite3.Row) -> AccessCode:
    return AccessCode(
        code=row["code"],
        issuer_id=row["issuer_id"],
        target_tier_level=row["target_tier_level"],
        department=row["department"],
        max_uses=row["max_uses"],
        expiry_date=_dt(row["expiry_date"]),
        created_at=_dt(row["created_at"]),
        current_uses=row["current_uses"],
        used_by_user_id=row["used_by_user_id"],
        used_date=_dt(row["used_date"]),
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        document_id=row["document_id"],
        file_name=row["file_name"],
        file_hash=row["file_hash"],
        file_size=row["file_size"],
        content_type=row["content_type"],
        blob_ref=row["blob_ref"],
        uploaded_by=row["uploaded_by"],
        upload_date=_dt(row["upload_date"]),
        minimum_tier_level=row["minimum_tier_level"],
        category=row["category"],
        description=row["description"],
        is_confidential=bool(row["is_confidential"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_access(row: sqlite3.Row) -> DocumentAccess:
    return DocumentAccess(
        access_id=row["access_id"],
        document_id=row["document_id"],
        user_id=row["user_id"],
        access_type=AccessType(row["access_type"]),
        accessed_at=_dt(row["accessed_at"]),
    )


class SQLiteDatabase(IdentityStore, AccessCodeLedger, DocumentCatalog, AccessAuditLog):
    """
    Thread-safe SQLite store.

    Manages users, access codes, redemptions, documents and access events.
    Connections are opened per operation with a busy timeout; lock waits
    and driver failures surface as ``StorageUnavailable``.
    """

    def __init__(self, db_path: Path, timeout: float = 5.0):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for locks before failing
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StorageUnavailable("storage did not respond in time")
        conn = None
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            logger.error(f"SQLite error on {self.db_path}: {e}")
            raise StorageUnavailable(f"storage error: {e}") from e
        finally:
            if conn is not None:
                conn.close()
            self._lock.release()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    email TEXT NOT NULL,
                    full_name TEXT NOT NULL,
                    department TEXT NOT NULL,
                    tier_level INTEGER NOT NULL CHECK (tier_level >= 1),
                    parent_user_id TEXT REFERENCES users(user_id),
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL,
                    last_login TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS access_codes (
                    code TEXT PRIMARY KEY,
                    issuer_id TEXT NOT NULL REFERENCES users(user_id),
                    target_tier_level INTEGER NOT NULL,
                    department TEXT NOT NULL,
                    max_uses INTEGER NOT NULL CHECK (max_uses >= 1),
                    current_uses INTEGER NOT NULL DEFAULT 0,
                    is_used INTEGER NOT NULL DEFAULT 0,
                    expiry_date TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    used_by_user_id TEXT,
                    used_date TEXT,
                    CHECK (current_uses <= max_uses)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS code_redemptions (
                    code TEXT NOT NULL REFERENCES access_codes(code),
                    user_id TEXT NOT NULL REFERENCES users(user_id),
                    redeemed_at TEXT NOT NULL,
                    PRIMARY KEY (code, user_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    document_id TEXT PRIMARY KEY,
                    file_name TEXT NOT NULL,
                    file_hash TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    blob_ref TEXT NOT NULL,
                    uploaded_by TEXT NOT NULL REFERENCES users(user_id),
                    upload_date TEXT NOT NULL,
                    minimum_tier_level INTEGER NOT NULL,
                    category TEXT DEFAULT '',
                    description TEXT DEFAULT '',
                    is_confidential INTEGER DEFAULT 0,
                    is_active INTEGER DEFAULT 1
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS document_accesses (
                    access_id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL REFERENCES documents(document_id),
                    user_id TEXT NOT NULL REFERENCES users(user_id),
                    access_type TEXT NOT NULL,
                    accessed_at TEXT NOT NULL
                )
            """)

            # Indexes for performance
            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_parent ON users(parent_user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_codes_issuer ON access_codes(issuer_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_accesses_date ON document_accesses(accessed_at)")

        logger.info(f"Access database initialized: {self.db_path}")

    # ========================================================================
    # IdentityStore
    # ========================================================================

    def count_users(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            return _row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
            return _row_to_user(row) if row else None

    def _insert_user(self, conn: sqlite3.Connection, user: User) -> User:
        if user.parent_user_id is not None:
            parent = conn.execute(
                "SELECT 1 FROM users WHERE user_id = ?", (user.parent_user_id,)
            ).fetchone()
            if not parent:
                raise InvalidParameter("parent user does not exist")

        try:
            conn.execute("""
                INSERT INTO users (user_id, username, password_hash, email, full_name, department,
                                   tier_level, parent_user_id, is_active, created_at, last_login)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user.user_id,
                user.username,
                user.password_hash,
                user.email,
                user.full_name,
                user.department,
                user.tier_level,
                user.parent_user_id,
                1 if user.is_active else 0,
                _ts(user.created_at),
                _ts(user.last_login),
            ))
        except sqlite3.IntegrityError as e:
            if "users.username" in str(e):
                raise DuplicateIdentity(f"username '{user.username}' is already taken") from e
            raise InvalidParameter(f"invalid user record: {e}") from e

        return user

    def insert_user(self, user: User) -> User:
        with self._transaction() as conn:
            return self._insert_user(conn, user)

    def insert_root_user(self, user: User) -> User:
        with self._transaction() as conn:
            if conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] > 0:
                raise AccessCodeRequired("an access code is required to register")
            return self._insert_user(conn, user)

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET is_active = ? WHERE user_id = ?",
                (1 if is_active else 0, user_id),
            )
            return cursor.rowcount > 0

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET last_login = ? WHERE user_id = ?", (_ts(when), user_id))

    def list_users(self, min_tier_level: int = 1, active_only: bool = True) -> List[User]:
        sql = "SELECT * FROM users WHERE tier_level >= ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY tier_level, full_name"
        with self._connect() as conn:
            return [_row_to_user(row) for row in conn.execute(sql, (min_tier_level,))]

    def list_children(self, parent_user_id: str, active_only: bool = True) -> List[User]:
        sql = "SELECT * FROM users WHERE parent_user_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY tier_level, full_name"
        with self._connect() as conn:
            return [_row_to_user(row) for row in conn.execute(sql, (parent_user_id,))]

    # ========================================================================
    # AccessCodeLedger
    # ========================================================================

    def insert_code(self, access_code: AccessCode) -> AccessCode:
        with self._transaction() as conn:
            try:
                conn.execute("""
                    INSERT INTO access_codes (code, issuer_id, target_tier_level, department,
                                              max_uses, current_uses, is_used, expiry_date, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    access_code.code,
                    access_code.issuer_id,
                    access_code.target_tier_level,
                    access_code.department,
                    access_code.max_uses,
                    access_code.current_uses,
                    1 if access_code.is_used else 0,
                    _ts(access_code.expiry_date),
                    _ts(access_code.created_at),
                ))
            except sqlite3.IntegrityError as e:
                raise DuplicateAccessCode(f"access code {access_code.code} already exists") from e
        return access_code

    def get_code(self, code: str) -> Optional[AccessCode]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM access_codes WHERE code = ?", (code,)).fetchone()
            return _row_to_code(row) if row else None

    def list_codes_by_issuer(self, issuer_id: str) -> List[AccessCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM access_codes WHERE issuer_id = ? ORDER BY created_at DESC",
                (issuer_id,),
            )
            return [_row_to_code(row) for row in rows]

    def count_codes(self, redeemable_at: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if redeemable_at is None:
                return conn.execute("SELECT COUNT(*) FROM access_codes").fetchone()[0]
            return conn.execute("""
                SELECT COUNT(*) FROM access_codes
                WHERE is_used = 0 AND current_uses < max_uses AND expiry_date > ?
            """, (_ts(redeemable_at),)).fetchone()[0]

    def redeem(self, code: str, user: User, now: datetime) -> AccessCode:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM access_codes WHERE code = ?", (code,)).fetchone()
            if not row or not _row_to_code(row).is_redeemable(now):
                raise InvalidOrExpiredCode("invalid or expired access code")

            self._insert_user(conn, user)

            conn.execute("""
                UPDATE access_codes
                SET current_uses = current_uses + 1,
                    is_used = CASE WHEN current_uses + 1 >= max_uses THEN 1 ELSE 0 END,
                    used_by_user_id = ?,
                    used_date = ?
                WHERE code = ?
            """, (user.user_id, _ts(now), code))
            conn.execute(
                "INSERT INTO code_redemptions (code, user_id, redeemed_at) VALUES (?, ?, ?)",
                (code, user.user_id, _ts(now)),
            )

            row = conn.execute("SELECT * FROM access_codes WHERE code = ?", (code,)).fetchone()
            return _row_to_code(row)

    def list_redemptions(self, code: str) -> List[CodeRedemption]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM code_redemptions WHERE code = ? ORDER BY redeemed_at",
                (code,),
            )
            return [
                CodeRedemption(code=r["code"], user_id=r["user_id"], redeemed_at=_dt(r["redeemed_at"]))
                for r in rows
            ]

    # ========================================================================
    # DocumentCatalog
    # ========================================================================

    def insert_document(self, document: Document) -> Document:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO documents (document_id, file_name, file_hash, file_size, content_type,
                                       blob_ref, uploaded_by, upload_date, minimum_tier_level,
                                       category, description, is_confidential, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                document.document_id,
                document.file_name,
                document.file_hash,
                document.file_size,
                document.content_type,
                document.blob_ref,
                document.uploaded_by,
                _ts(document.upload_date),
                document.minimum_tier_level,
                document.category,
                document.description,
                1 if document.is_confidential else 0,
                1 if document.is_active else 0,
            ))
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
            return _row_to_document(row) if row else None

    def list_active_documents(self, viewer_tier: Optional[int] = None) -> List[Document]:
        sql = "SELECT * FROM documents WHERE is_active = 1"
        params = ()
        if viewer_tier is not None:
            sql += " AND minimum_tier_level >= ?"
            params = (viewer_tier,)
        sql += " ORDER BY upload_date DESC"
        with self._connect() as conn:
            return [_row_to_document(row) for row in conn.execute(sql, params)]

    def deactivate_document(self, document_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE documents SET is_active = 0 WHERE document_id = ?", (document_id,)
            )
            return cursor.rowcount > 0

    def count_active_by_uploader(self, uploader_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM documents WHERE uploaded_by = ? AND is_active = 1",
                (uploader_id,),
            ).fetchone()[0]

    # ========================================================================
    # AccessAuditLog
    # ========================================================================

    def append(self, access: DocumentAccess) -> DocumentAccess:
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO document_accesses (access_id, document_id, user_id, access_type, accessed_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                access.access_id,
                access.document_id,
                access.user_id,
                access.access_type.value,
                _ts(access.accessed_at),
            ))
        return access

    def query(
        self,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[DocumentAccess]:
        clauses = []
        params = []
        if document_id is not None:
            clauses.append("document_id = ?")
            params.append(document_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if since is not None:
            clauses.append("accessed_at >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("accessed_at <= ?")
            params.append(_ts(until))

        sql = "SELECT * FROM document_accesses"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY accessed_at DESC LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])

        with self._connect() as conn:
            return [_row_to_access(row) for row in conn.execute(sql, params)]

    def count(self, since: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if since is None:
                return conn.execute("SELECT COUNT(*) FROM document_accesses").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM document_accesses WHERE accessed_at >= ?", (_ts(since),)
            ).fetchone()[0]
