"""
PostgreSQL storage for the escrow ledger.

Implements the repository contract on top of an asyncpg pool:
- ``escrow_accounts`` with the admin/compliance blocks as JSONB
- ``escrow_transactions`` (deposits, releases, refunds)
- ``escrow_audit_trail``, append-only through a trigger
- ``commission_settings`` and ``notifications``

``locked()`` takes the account row with ``SELECT ... FOR UPDATE`` under a
``lock_timeout``, so concurrent writers on one account serialize in the
database and a contended lock surfaces as ConcurrencyConflictError.

Dependencies:
    - asyncpg: For async PostgreSQL operations
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from commission_engine import CommissionSetting
from escrow_errors import ConcurrencyConflictError, DatabaseError, NotFoundError, StateError
from escrow_models import (
    AdminControls,
    AuditAction,
    AuditTrailEntry,
    ComplianceStatus,
    EscrowAccount,
    EscrowStatus,
    EscrowTransaction,
    TransactionStatus,
    TransactionType,
)
from escrow_repository import CommissionSettingsStore, EscrowRepository, UnitOfWork

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS escrow_accounts (
    id VARCHAR(64) PRIMARY KEY,
    contract_id VARCHAR(64) UNIQUE NOT NULL,
    manager_id VARCHAR(64) NOT NULL,
    talent_id VARCHAR(64) NOT NULL,
    gateway_customer_ref VARCHAR(255),
    total_amount NUMERIC(18, 4) NOT NULL CHECK (total_amount > 0),
    held_amount NUMERIC(18, 4) NOT NULL DEFAULT 0 CHECK (held_amount >= 0),
    released_amount NUMERIC(18, 4) NOT NULL DEFAULT 0 CHECK (released_amount >= 0),
    refunded_amount NUMERIC(18, 4) NOT NULL DEFAULT 0 CHECK (refunded_amount >= 0),
    currency VARCHAR(3) NOT NULL DEFAULT 'usd',
    status VARCHAR(20) NOT NULL DEFAULT 'created'
        CHECK (status IN ('created', 'funded', 'partial_release',
                          'completed', 'refunded', 'disputed')),
    platform_fee_percentage NUMERIC(7, 4) NOT NULL DEFAULT 0,
    platform_fee_amount NUMERIC(18, 4) NOT NULL DEFAULT 0,
    commission_setting_id VARCHAR(64),
    status_before_dispute VARCHAR(20),
    admin_controls JSONB NOT NULL DEFAULT '{}'::jsonb,
    compliance JSONB NOT NULL DEFAULT '{}'::jsonb,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    funded_at TIMESTAMPTZ,
    CONSTRAINT held_within_total CHECK (held_amount <= total_amount),
    CONSTRAINT paid_out_within_held CHECK (released_amount + refunded_amount <= held_amount)
);

CREATE TABLE IF NOT EXISTS escrow_transactions (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL REFERENCES escrow_accounts(id) ON DELETE RESTRICT,
    type VARCHAR(20) NOT NULL CHECK (type IN ('deposit', 'hold', 'release', 'refund')),
    amount NUMERIC(18, 4) NOT NULL CHECK (amount > 0),
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'completed', 'failed', 'cancelled')),
    gateway_ref VARCHAR(255),
    idempotency_key VARCHAR(255) UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    milestone_id VARCHAR(64),
    commission_setting_id VARCHAR(64),
    fee_amount NUMERIC(18, 4),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    processed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS escrow_audit_trail (
    id VARCHAR(64) PRIMARY KEY,
    escrow_id VARCHAR(64) NOT NULL,
    action VARCHAR(30) NOT NULL,
    amount NUMERIC(18, 4),
    performed_by VARCHAR(64) NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    timestamp TIMESTAMPTZ NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    seq BIGSERIAL
);

CREATE OR REPLACE FUNCTION escrow_audit_trail_immutable() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'escrow_audit_trail is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS escrow_audit_trail_no_change ON escrow_audit_trail;
CREATE TRIGGER escrow_audit_trail_no_change
    BEFORE UPDATE OR DELETE ON escrow_audit_trail
    FOR EACH ROW EXECUTE FUNCTION escrow_audit_trail_immutable();

CREATE TABLE IF NOT EXISTS commission_settings (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    user_type VARCHAR(20) NOT NULL,
    priority INTEGER NOT NULL DEFAULT 1,
    body JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS notifications (
    id SERIAL PRIMARY KEY,
    user_id VARCHAR(64) NOT NULL,
    notification_type VARCHAR(30) NOT NULL,
    title VARCHAR(255) NOT NULL,
    message TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_read BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_escrow_manager ON escrow_accounts(manager_id);
CREATE INDEX IF NOT EXISTS idx_escrow_talent ON escrow_accounts(talent_id);
CREATE INDEX IF NOT EXISTS idx_escrow_status ON escrow_accounts(status);
CREATE INDEX IF NOT EXISTS idx_transactions_escrow ON escrow_transactions(escrow_id);
CREATE INDEX IF NOT EXISTS idx_transactions_gateway_ref ON escrow_transactions(gateway_ref);
CREATE INDEX IF NOT EXISTS idx_transactions_pending
    ON escrow_transactions(type, created_at) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_audit_escrow ON escrow_audit_trail(escrow_id, seq);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
CREATE INDEX IF NOT EXISTS idx_notifications_unread ON notifications(is_read);
"""

ACCOUNT_COLUMNS = """
    id, contract_id, manager_id, talent_id, gateway_customer_ref, total_amount,
    held_amount, released_amount, refunded_amount, currency, status,
    platform_fee_percentage, platform_fee_amount, commission_setting_id,
    status_before_dispute, admin_controls, compliance, version,
    created_at, updated_at, funded_at
"""


def _json(value: Any) -> str:
    return json.dumps(value, default=str)


def _load_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def _account_from_row(row: asyncpg.Record) -> EscrowAccount:
    before = row['status_before_dispute']
    return EscrowAccount(
        id=row['id'],
        contract_id=row['contract_id'],
        manager_id=row['manager_id'],
        talent_id=row['talent_id'],
        gateway_customer_ref=row['gateway_customer_ref'],
        total_amount=row['total_amount'],
        held_amount=row['held_amount'],
        released_amount=row['released_amount'],
        refunded_amount=row['refunded_amount'],
        currency=row['currency'],
        status=EscrowStatus(row['status']),
        platform_fee_percentage=row['platform_fee_percentage'],
        platform_fee_amount=row['platform_fee_amount'],
        commission_setting_id=row['commission_setting_id'],
        status_before_dispute=EscrowStatus(before) if before else None,
        admin_controls=AdminControls.from_dict(_load_json(row['admin_controls'])),
        compliance=ComplianceStatus.from_dict(_load_json(row['compliance'])),
        version=row['version'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        funded_at=row['funded_at'],
    )


def _transaction_from_row(row: asyncpg.Record) -> EscrowTransaction:
    return EscrowTransaction(
        id=row['id'],
        escrow_id=row['escrow_id'],
        type=TransactionType(row['type']),
        amount=row['amount'],
        status=TransactionStatus(row['status']),
        gateway_ref=row['gateway_ref'],
        idempotency_key=row['idempotency_key'],
        description=row['description'],
        milestone_id=row['milestone_id'],
        commission_setting_id=row['commission_setting_id'],
        fee_amount=row['fee_amount'],
        created_at=row['created_at'],
        processed_at=row['processed_at'],
    )


def _audit_from_row(row: asyncpg.Record) -> AuditTrailEntry:
    return AuditTrailEntry(
        id=row['id'],
        escrow_id=row['escrow_id'],
        action=AuditAction(row['action']),
        performed_by=row['performed_by'],
        reason=row['reason'],
        timestamp=row['timestamp'],
        amount=row['amount'],
        metadata=_load_json(row['metadata']) or {},
    )


class EscrowDatabase(EscrowRepository):
    """
    asyncpg-backed escrow repository.

    Attributes:
        pool: Connection pool for database operations
        database_url: PostgreSQL connection string
    """

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """
        Establish the connection pool.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60
            )
            logger.info("Database connection pool established")
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise DatabaseError(f"Database connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.pool

    async def initialize_tables(self) -> None:
        """Create tables, indexes and the audit trail trigger."""
        async with self._require_pool().acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("All database tables and indexes created successfully")

    async def health_check(self) -> bool:
        try:
            async with self._require_pool().acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, DatabaseError, OSError) as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # ==================== ACCOUNTS ====================

    async def insert_account(self, account: EscrowAccount, audit_entry: AuditTrailEntry) -> None:
        try:
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    await conn.execute(f"""
                        INSERT INTO escrow_accounts ({ACCOUNT_COLUMNS})
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                                $15, $16::jsonb, $17::jsonb, $18, $19, $20, $21)
                    """, *self._account_values(account))
                    await self._insert_audit(conn, audit_entry)
        except asyncpg.UniqueViolationError as e:
            logger.warning(f"Escrow account for contract {account.contract_id} already exists")
            raise StateError(
                f"Escrow account already exists for contract {account.contract_id}",
                {'contract_id': account.contract_id},
            ) from e
        except asyncpg.PostgresError as e:
            logger.error(f"Error creating escrow account: {e}")
            raise DatabaseError(f"Failed to create escrow account: {e}") from e

        logger.info(f"Escrow account stored: {account.id}")

    @staticmethod
    def _account_values(account: EscrowAccount) -> Tuple:
        return (
            account.id, account.contract_id, account.manager_id, account.talent_id,
            account.gateway_customer_ref, account.total_amount, account.held_amount,
            account.released_amount, account.refunded_amount, account.currency,
            account.status.value, account.platform_fee_percentage, account.platform_fee_amount,
            account.commission_setting_id,
            account.status_before_dispute.value if account.status_before_dispute else None,
            _json(account.admin_controls.to_dict()), _json(account.compliance.to_dict()),
            account.version, account.created_at, account.updated_at, account.funded_at,
        )

    @asynccontextmanager
    async def locked(self, escrow_id: str, timeout: float) -> AsyncIterator[UnitOfWork]:
        pool = self._require_pool()
        try:
            conn = await pool.acquire(timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConcurrencyConflictError(
                f"Timed out waiting for a connection to lock escrow {escrow_id}",
                {'escrow_id': escrow_id, 'timeout': timeout},
            ) from e

        try:
            async with conn.transaction():
                await conn.execute(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'")
                try:
                    row = await conn.fetchrow(
                        f"SELECT {ACCOUNT_COLUMNS} FROM escrow_accounts WHERE id = $1 FOR UPDATE",
                        escrow_id,
                    )
                except asyncpg.LockNotAvailableError as e:
                    raise ConcurrencyConflictError(
                        f"Timed out waiting for lock on escrow {escrow_id}",
                        {'escrow_id': escrow_id, 'timeout': timeout},
                    ) from e
                if row is None:
                    raise NotFoundError(f"Escrow account not found: {escrow_id}", {'escrow_id': escrow_id})

                txn_rows = await conn.fetch(
                    "SELECT * FROM escrow_transactions WHERE escrow_id = $1 ORDER BY created_at",
                    escrow_id,
                )
                uow = UnitOfWork(_account_from_row(row), [_transaction_from_row(r) for r in txn_rows])
                yield uow
                uow.prepare_commit()
                await self._flush(conn, uow)
        except asyncpg.PostgresError as e:
            logger.error(f"Database error on escrow {escrow_id}: {e}")
            raise DatabaseError(f"Database operation failed: {e}", {'escrow_id': escrow_id}) from e
        finally:
            await pool.release(conn)

    async def _flush(self, conn: asyncpg.Connection, uow: UnitOfWork) -> None:
        account = uow.account
        if uow.account_dirty:
            result = await conn.execute("""
                UPDATE escrow_accounts
                SET gateway_customer_ref = $2,
                    held_amount = $3,
                    released_amount = $4,
                    refunded_amount = $5,
                    status = $6,
                    platform_fee_percentage = $7,
                    platform_fee_amount = $8,
                    commission_setting_id = $9,
                    status_before_dispute = $10,
                    admin_controls = $11::jsonb,
                    compliance = $12::jsonb,
                    version = $13,
                    updated_at = $14,
                    funded_at = $15
                WHERE id = $1 AND version = $16
            """,
                account.id, account.gateway_customer_ref, account.held_amount,
                account.released_amount, account.refunded_amount, account.status.value,
                account.platform_fee_percentage, account.platform_fee_amount,
                account.commission_setting_id,
                account.status_before_dispute.value if account.status_before_dispute else None,
                _json(account.admin_controls.to_dict()), _json(account.compliance.to_dict()),
                account.version, account.updated_at, account.funded_at, account.version - 1,
            )
            if result != "UPDATE 1":
                raise ConcurrencyConflictError(
                    f"Escrow {account.id} changed underneath the lock",
                    {'escrow_id': account.id, 'version': account.version - 1},
                )

        for txn in uow.new_transactions():
            await conn.execute("""
                INSERT INTO escrow_transactions
                (id, escrow_id, type, amount, status, gateway_ref, idempotency_key, description,
                 milestone_id, commission_setting_id, fee_amount, created_at, processed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """,
                txn.id, txn.escrow_id, txn.type.value, txn.amount, txn.status.value,
                txn.gateway_ref, txn.idempotency_key, txn.description, txn.milestone_id,
                txn.commission_setting_id, txn.fee_amount, txn.created_at, txn.processed_at,
            )

        for txn in uow.updated_transactions():
            await conn.execute("""
                UPDATE escrow_transactions
                SET status = $2, gateway_ref = $3, description = $4, processed_at = $5
                WHERE id = $1
            """, txn.id, txn.status.value, txn.gateway_ref, txn.description, txn.processed_at)

        for entry in uow.audit_entries:
            await self._insert_audit(conn, entry)

    async def get_account(self, escrow_id: str) -> Optional[EscrowAccount]:
        row = await self._fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM escrow_accounts WHERE id = $1", escrow_id
        )
        return _account_from_row(row) if row else None

    async def get_account_by_contract(self, contract_id: str) -> Optional[EscrowAccount]:
        row = await self._fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM escrow_accounts WHERE contract_id = $1", contract_id
        )
        return _account_from_row(row) if row else None

    async def list_accounts(
        self,
        party_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        offset: int = 0,
        limit: int = 10
    ) -> Tuple[List[EscrowAccount], int]:
        clauses = []
        params: List[Any] = []
        if party_id is not None:
            params.append(party_id)
            clauses.append(f"(manager_id = ${len(params)} OR talent_id = ${len(params)})")
        if status is not None:
            params.append(EscrowStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            async with self._require_pool().acquire() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM escrow_accounts {where}", *params)
                rows = await conn.fetch(f"""
                    SELECT {ACCOUNT_COLUMNS} FROM escrow_accounts {where}
                    ORDER BY created_at DESC
                    LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """, *params, limit, offset)
        except asyncpg.PostgresError as e:
            logger.error(f"Error listing escrow accounts: {e}")
            raise DatabaseError(f"Failed to list escrow accounts: {e}") from e

        return [_account_from_row(r) for r in rows], total

    async def list_auto_release_candidates(self) -> List[EscrowAccount]:
        rows = await self._fetch(f"""
            SELECT {ACCOUNT_COLUMNS} FROM escrow_accounts
            WHERE status IN ('funded', 'partial_release')
              AND held_amount - released_amount - refunded_amount > 0
        """)
        return [_account_from_row(r) for r in rows]

    # ==================== TRANSACTIONS ====================

    async def list_transactions(self, escrow_id: str) -> List[EscrowTransaction]:
        rows = await self._fetch(
            "SELECT * FROM escrow_transactions WHERE escrow_id = $1 ORDER BY created_at", escrow_id
        )
        return [_transaction_from_row(r) for r in rows]

    async def get_transaction(self, txn_id: str) -> Optional[EscrowTransaction]:
        row = await self._fetchrow("SELECT * FROM escrow_transactions WHERE id = $1", txn_id)
        return _transaction_from_row(row) if row else None

    async def find_transaction_by_gateway_ref(self, gateway_ref: str) -> Optional[EscrowTransaction]:
        row = await self._fetchrow(
            "SELECT * FROM escrow_transactions WHERE gateway_ref = $1", gateway_ref
        )
        return _transaction_from_row(row) if row else None

    async def list_stale_pending_transactions(
        self,
        txn_type: TransactionType,
        older_than: datetime
    ) -> List[EscrowTransaction]:
        rows = await self._fetch("""
            SELECT * FROM escrow_transactions
            WHERE type = $1 AND status = 'pending' AND created_at < $2
            ORDER BY created_at
        """, TransactionType(txn_type).value, older_than)
        return [_transaction_from_row(r) for r in rows]

    # ==================== AUDIT TRAIL ====================

    @staticmethod
    async def _insert_audit(conn: asyncpg.Connection, entry: AuditTrailEntry) -> None:
        await conn.execute("""
            INSERT INTO escrow_audit_trail
            (id, escrow_id, action, amount, performed_by, reason, timestamp, metadata)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
        """,
            entry.id, entry.escrow_id, entry.action.value, entry.amount,
            entry.performed_by, entry.reason, entry.timestamp, _json(entry.metadata),
        )

    async def append_audit(self, entry: AuditTrailEntry) -> None:
        try:
            async with self._require_pool().acquire() as conn:
                await self._insert_audit(conn, entry)
        except asyncpg.PostgresError as e:
            logger.error(f"Error writing audit entry for escrow {entry.escrow_id}: {e}")
            raise DatabaseError(f"Failed to write audit entry: {e}") from e

    async def list_audit(self, escrow_id: str) -> List[AuditTrailEntry]:
        rows = await self._fetch(
            "SELECT * FROM escrow_audit_trail WHERE escrow_id = $1 ORDER BY seq", escrow_id
        )
        return [_audit_from_row(r) for r in rows]

    # ==================== STATISTICS ====================

    async def get_statistics(self) -> Dict[str, Any]:
        try:
            async with self._require_pool().acquire() as conn:
                totals = await conn.fetchrow("""
                    SELECT
                        COUNT(*) AS total_escrows,
                        COALESCE(SUM(total_amount), 0) AS total_value,
                        COALESCE(SUM(held_amount), 0) AS total_held,
                        COALESCE(SUM(released_amount), 0) AS total_released,
                        COALESCE(SUM(refunded_amount), 0) AS total_refunded,
                        COALESCE(SUM(platform_fee_amount), 0) AS platform_fees_collected
                    FROM escrow_accounts
                """)
                status_rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM escrow_accounts GROUP BY status"
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Error fetching escrow statistics: {e}")
            raise DatabaseError(f"Failed to fetch statistics: {e}") from e

        by_status = {s.value: 0 for s in EscrowStatus}
        for row in status_rows:
            by_status[row['status']] = row['count']

        stats = dict(totals)
        for key in ('total_value', 'total_held', 'total_released', 'total_refunded',
                    'platform_fees_collected'):
            stats[key] = Decimal(stats[key])
        stats['by_status'] = by_status
        return stats

    # ==================== HELPERS ====================

    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as e:
            logger.error(f"Query failed: {e}")
            raise DatabaseError(f"Database query failed: {e}") from e

    async def _fetchrow(self, query: str, *args) -> Optional[asyncpg.Record]:
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchrow(query, *args)
        except asyncpg.PostgresError as e:
            logger.error(f"Query failed: {e}")
            raise DatabaseError(f"Database query failed: {e}") from e


class PostgresCommissionSettingsStore(CommissionSettingsStore):
    """Commission settings stored as JSONB documents in ``commission_settings``."""

    def __init__(self, database: EscrowDatabase):
        self.db = database

    async def list_settings(self) -> List[CommissionSetting]:
        rows = await self.db._fetch(
            "SELECT body FROM commission_settings ORDER BY priority DESC, created_at DESC"
        )
        return [CommissionSetting.from_dict(_load_json(r['body'])) for r in rows]

    async def get_setting(self, setting_id: str) -> Optional[CommissionSetting]:
        row = await self.db._fetchrow("SELECT body FROM commission_settings WHERE id = $1", setting_id)
        return CommissionSetting.from_dict(_load_json(row['body'])) if row else None

    async def save_setting(self, setting: CommissionSetting) -> None:
        try:
            async with self.db._require_pool().acquire() as conn:
                await conn.execute("""
                    INSERT INTO commission_settings (id, name, user_type, priority, body, created_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                    ON CONFLICT (id) DO UPDATE
                    SET name = EXCLUDED.name,
                        user_type = EXCLUDED.user_type,
                        priority = EXCLUDED.priority,
                        body = EXCLUDED.body
                """,
                    setting.id, setting.name, setting.user_type.value, setting.priority,
                    _json(setting.to_dict()), setting.created_at,
                )
        except asyncpg.PostgresError as e:
            logger.error(f"Error saving commission setting {setting.id}: {e}")
            raise DatabaseError(f"Failed to save commission setting: {e}") from e

    async def delete_setting(self, setting_id: str) -> bool:
        try:
            async with self.db._require_pool().acquire() as conn:
                result = await conn.execute("DELETE FROM commission_settings WHERE id = $1", setting_id)
        except asyncpg.PostgresError as e:
            logger.error(f"Error deleting commission setting {setting_id}: {e}")
            raise DatabaseError(f"Failed to delete commission setting: {e}") from e
        return result == "DELETE 1"

    async def increment_promotional_usage(self, setting_id: str) -> None:
        try:
            async with self.db._require_pool().acquire() as conn:
                await conn.execute("""
                    UPDATE commission_settings
                    SET body = jsonb_set(
                        body,
                        '{promotional,current_users}',
                        to_jsonb(COALESCE((body->'promotional'->>'current_users')::int, 0) + 1)
                    )
                    WHERE id = $1
                """, setting_id)
        except asyncpg.PostgresError as e:
            logger.error(f"Error updating promotional usage of {setting_id}: {e}")
            raise DatabaseError(f"Failed to update promotional usage: {e}") from e


async def create_escrow_db(database_url: str, min_size: int = 2, max_size: int = 10) -> EscrowDatabase:
    """
    Factory function to create and initialize the escrow database.

    Args:
        database_url: PostgreSQL connection URL

    Returns:
        Connected EscrowDatabase with tables created
    """
    db = EscrowDatabase(database_url, min_size=min_size, max_size=max_size)
    await db.connect()
    await db.initialize_tables()
    return db
