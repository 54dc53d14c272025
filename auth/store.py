"""
auth/store.py -- SQLAlchemy Core persistence for account security state.

Pattern: Repository + Data Mapper. SecurityStore is the repository;
_row_to_account / _row_to_blocked_ip / _row_to_audit are the mappers. Route,
engine and manager code never touches SQL directly.

What lives here (and what does not):
  account_security  lock + MFA flags per user. Written by monitor actions,
                    read on every sign-in and session validation.
  blocked_ips       addresses blocked by the brute-force rule.
  audit_log         append-only audit records from every store operation.

  Sessions, transfer tokens and security events are NOT persisted here. They
  are short-lived, in-memory, lock-guarded collections owned by their stores.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: auth/crossauth_security.db unless AUDIT_DB_URL is set.

Layer rule: no imports from api/, crossdomain/, sessions/, or monitor/.
"""

from __future__ import annotations

import json
import time
from pathlib import Path

from sqlalchemy import Boolean, Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from auth.models import AccountSecurity, AuditRecord, BlockedIP

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'crossauth_security.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_account_security = Table(
    "account_security",
    _metadata,
    Column("user_id", String(255), primary_key=True),
    Column("is_locked", Boolean, nullable=False, server_default="0"),
    Column("locked_until", Float),  # NULL + is_locked = permanent
    Column("locked_reason", Text),
    Column("mfa_required", Boolean, nullable=False, server_default="0"),
    Column("mfa_required_reason", Text),
    Column("updated_at", Float),
)

_blocked_ips = Table(
    "blocked_ips",
    _metadata,
    Column("ip_address", String(64), primary_key=True),
    Column("reason", Text, nullable=False),
    Column("blocked_at", Float, nullable=False),
)

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(64), nullable=False, index=True),
    Column("user_id", String(255), index=True),
    Column("domain", String(255), nullable=False),
    Column("timestamp", Float, nullable=False, index=True),
    Column("success", Boolean, nullable=False),
    Column("metadata", Text),  # JSON
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SecurityStore:
    """Repository for account security state, IP blocks and audit records.

    Usage:
        store = SecurityStore()
        store.lock_account("user-1", "temporary lockout", until=time.time() + 1800)
        locked, retry_after = store.lock_status("user-1")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock=time.time) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._clock = clock

    # ------------------------------------------------------------------
    # Account security
    # ------------------------------------------------------------------

    def get_account(self, user_id: str) -> AccountSecurity:
        """Return the security row for user_id, or a default unlocked record."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _account_security.select().where(_account_security.c.user_id == user_id)
            ).fetchone()
        return _row_to_account(row) if row is not None else AccountSecurity(user_id=user_id)

    def _upsert_account(self, user_id: str, **values) -> None:
        values["updated_at"] = self._clock()
        stmt = sqlite_insert(_account_security).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def lock_account(self, user_id: str, reason: str, until: float | None = None) -> None:
        """Lock an account. until=None locks permanently (operator unlock only).

        A temporary lock never shortens an existing longer or permanent lock.
        """
        current = self.get_account(user_id)
        if current.is_locked and until is not None:
            if current.locked_until is None or current.locked_until >= until:
                return
        self._upsert_account(user_id, is_locked=True, locked_until=until, locked_reason=reason)

    def unlock_account(self, user_id: str) -> bool:
        """Clear the lock. Returns True if a lock was lifted."""
        current = self.get_account(user_id)
        if not current.is_locked:
            return False
        self._upsert_account(user_id, is_locked=False, locked_until=None, locked_reason=None)
        return True

    def lock_status(self, user_id: str) -> tuple[bool, int | None]:
        """Return (is_locked, retry_after_seconds).

        Expired temporary locks are lifted lazily here so the lock holds
        exactly until locked_until without a scheduler. retry_after is None
        for permanent locks.
        """
        account = self.get_account(user_id)
        if not account.is_locked:
            return False, None
        if account.locked_until is None:
            return True, None
        remaining = account.locked_until - self._clock()
        if remaining <= 0:
            self.unlock_account(user_id)
            return False, None
        return True, int(remaining) + 1

    def require_mfa(self, user_id: str, reason: str) -> None:
        self._upsert_account(user_id, mfa_required=True, mfa_required_reason=reason)

    def clear_mfa_requirement(self, user_id: str) -> None:
        self._upsert_account(user_id, mfa_required=False, mfa_required_reason=None)

    # ------------------------------------------------------------------
    # IP blocks
    # ------------------------------------------------------------------

    def block_ip(self, ip_address: str, reason: str) -> None:
        values = {"reason": reason, "blocked_at": self._clock()}
        stmt = sqlite_insert(_blocked_ips).values(ip_address=ip_address, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["ip_address"], set_=values)
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def unblock_ip(self, ip_address: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_blocked_ips.delete().where(_blocked_ips.c.ip_address == ip_address))
            conn.commit()
        return result.rowcount > 0

    def is_ip_blocked(self, ip_address: str | None) -> bool:
        if not ip_address:
            return False
        with self.engine.connect() as conn:
            row = conn.execute(
                _blocked_ips.select().where(_blocked_ips.c.ip_address == ip_address)
            ).fetchone()
        return row is not None

    def list_blocked_ips(self) -> list[BlockedIP]:
        with self.engine.connect() as conn:
            rows = conn.execute(_blocked_ips.select().order_by(_blocked_ips.c.blocked_at.desc())).fetchall()
        return [_row_to_blocked_ip(r) for r in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit(self, record: AuditRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _audit_log.insert().values(
                    type=record.type,
                    user_id=record.user_id,
                    domain=record.domain,
                    timestamp=record.timestamp,
                    success=record.success,
                    metadata=json.dumps(record.metadata, default=str),
                )
            )
            conn.commit()

    def recent_audit(self, limit: int = 100, user_id: str | None = None) -> list[AuditRecord]:
        """Return audit records newest first, optionally for one user."""
        query = _audit_log.select()
        if user_id is not None:
            query = query.where(_audit_log.c.user_id == user_id)
        query = query.order_by(_audit_log.c.timestamp.desc(), _audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit(r) for r in rows]

    def count_audit(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(func.count().select().select_from(_audit_log)).scalar() or 0

    def prune_audit(self, older_than: float) -> int:
        """Delete audit rows older than the given epoch. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_audit_log.delete().where(_audit_log.c.timestamp < older_than))
            conn.commit()
        return result.rowcount

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(func.count().select().select_from(_blocked_ips))
            return True
        except Exception:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> AccountSecurity:
    return AccountSecurity(
        user_id=row.user_id,
        is_locked=bool(row.is_locked),
        locked_until=row.locked_until,
        locked_reason=row.locked_reason,
        mfa_required=bool(row.mfa_required),
        mfa_required_reason=row.mfa_required_reason,
        updated_at=row.updated_at,
    )


def _row_to_blocked_ip(row) -> BlockedIP:
    return BlockedIP(ip_address=row.ip_address, reason=row.reason, blocked_at=row.blocked_at)


def _row_to_audit(row) -> AuditRecord:
    return AuditRecord(
        type=row.type,
        user_id=row.user_id,
        domain=row.domain,
        timestamp=row.timestamp,
        success=bool(row.success),
        metadata=json.loads(row.metadata) if row.metadata else {},
    )
