"""
Billing storage using SQLite (bootstrap) -> PostgreSQL (production).

Tables:
- organizations: per-organization billing profile (provider linkage,
  subscription state, credit balance, auto-recharge config)
- organization_members: role lookup source (owned by the membership subsystem)
- usage_records: immutable metered usage, unique per (organization, reference)
- webhook_events: inbound provider events, unique per provider event id
- credit_ledger: append-only signed balance adjustments

Integrity features:
- Unique constraints back the application-level idempotency checks
- Credit adjustments run inside BEGIN IMMEDIATE (writers serialize)
- Prepared statements everywhere
"""

import functools
import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from src.billing.errors import StorageError
from src.models.billing import (
    BillingProfile,
    CreditLedgerEntry,
    MemberRole,
    SubscriptionPatch,
    SubscriptionStatus,
    UpdateBillingSettingsCommand,
    UsageRecord,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS organizations (
    organization_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    billing_email TEXT,
    stripe_customer_id TEXT,
    stripe_subscription_id TEXT,
    stripe_payment_method_id TEXT,
    stripe_metered_subscription_item_id TEXT,
    subscription_status TEXT NOT NULL DEFAULT 'inactive',
    is_subscribed INTEGER NOT NULL DEFAULT 0,
    subscription_plan TEXT,
    subscription_started_at TEXT,
    subscription_ends_at TEXT,
    subscription_current_period_end TEXT,
    credits_balance INTEGER NOT NULL DEFAULT 0,
    reserved_credits INTEGER NOT NULL DEFAULT 0,
    auto_recharge_enabled INTEGER NOT NULL DEFAULT 0,
    auto_recharge_threshold INTEGER,
    auto_recharge_amount INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,

    CHECK (is_subscribed IN (0, 1)),
    CHECK (auto_recharge_enabled IN (0, 1)),
    CHECK (subscription_status IN (
        'active', 'inactive', 'trialing', 'past_due', 'canceled', 'paused', 'unpaid'
    ))
);

CREATE TABLE IF NOT EXISTS organization_members (
    organization_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    created_at TEXT NOT NULL,

    PRIMARY KEY (organization_id, user_id),
    FOREIGN KEY (organization_id) REFERENCES organizations(organization_id)
        ON DELETE CASCADE,
    CHECK (role IN ('owner', 'admin', 'member'))
);

CREATE TABLE IF NOT EXISTS usage_records (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    category TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    unit_cost INTEGER NOT NULL,
    total_cost INTEGER NOT NULL,
    reference_id TEXT,
    stripe_usage_record_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    recorded_at TEXT NOT NULL,
    created_at TEXT NOT NULL,

    FOREIGN KEY (organization_id) REFERENCES organizations(organization_id),
    CHECK (quantity >= 1),
    CHECK (unit_cost >= 0)
);

CREATE TABLE IF NOT EXISTS webhook_events (
    id TEXT PRIMARY KEY,
    stripe_event_id TEXT NOT NULL UNIQUE,
    event_type TEXT NOT NULL,
    organization_id TEXT,
    payload TEXT NOT NULL,
    processed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_ledger (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    amount INTEGER NOT NULL,
    entry_type TEXT NOT NULL,
    reason TEXT NOT NULL,
    reference_id TEXT,
    balance_after INTEGER NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,

    FOREIGN KEY (organization_id) REFERENCES organizations(organization_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_usage_records_org_reference
    ON usage_records(organization_id, reference_id)
    WHERE reference_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_usage_records_org_category_recorded
    ON usage_records(organization_id, category, recorded_at);
CREATE INDEX IF NOT EXISTS idx_organizations_stripe_customer
    ON organizations(stripe_customer_id);
CREATE INDEX IF NOT EXISTS idx_organizations_stripe_subscription
    ON organizations(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS idx_credit_ledger_org_created
    ON credit_ledger(organization_id, created_at);
"""

# SubscriptionPatch field -> organizations column
SUBSCRIPTION_COLUMNS = {
    "billing_email": "billing_email",
    "customer_id": "stripe_customer_id",
    "subscription_id": "stripe_subscription_id",
    "payment_method_id": "stripe_payment_method_id",
    "metered_subscription_item_id": "stripe_metered_subscription_item_id",
    "is_subscribed": "is_subscribed",
    "subscription_status": "subscription_status",
    "subscription_plan": "subscription_plan",
    "subscription_started_at": "subscription_started_at",
    "subscription_ends_at": "subscription_ends_at",
    "subscription_current_period_end": "subscription_current_period_end",
}

SETTINGS_COLUMNS = {
    "billing_email": "billing_email",
    "auto_recharge_enabled": "auto_recharge_enabled",
    "auto_recharge_threshold": "auto_recharge_threshold",
    "auto_recharge_amount": "auto_recharge_amount",
}


def _to_iso(value: datetime | None) -> str | None:
    """Normalize to a fixed-width UTC ISO string so text comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_column_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_iso(value)
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, SubscriptionStatus):
        return value.value
    return value


def _storage_operation(description: str):
    """Wrap sqlite3 failures in StorageError so callers never see driver exceptions."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except sqlite3.Error as e:
                logger.error(f"{description} failed", extra={"error": str(e)})
                raise StorageError(f"{description} failed: {e}") from e

        return wrapper

    return decorator


class BillingDatabase:
    """
    Billing, usage and webhook event storage.

    Implements the BillingStore, UsageStore, WebhookEventStore and
    MembershipLookup ports. Pass db_path=":memory:" for an isolated in-memory
    database (tests, local development).
    """

    def __init__(self, db_path: str = "./data/billing.db"):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        if db_path != IN_MEMORY:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._write_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def in_memory(cls) -> "BillingDatabase":
        return cls(db_path=IN_MEMORY)

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")
        conn = self._get_connection()

        try:
            if self.db_path != IN_MEMORY:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
            self._initialized = True
            logger.info("Billing database initialized successfully")

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize billing database: {e}")
            raise

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            # Autocommit mode: transactions are opened explicitly where needed
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA busy_timeout = 5000")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction holding the database write lock from the first statement.

        BEGIN IMMEDIATE acquires the RESERVED lock up front, so concurrent
        read-modify-write sequences serialize instead of racing.
        """
        conn = self._get_connection()
        with self._write_lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Organizations and membership
    # ------------------------------------------------------------------

    @_storage_operation("Create organization")
    async def create_organization(
        self,
        organization_id: str,
        name: str,
        billing_email: str | None = None,
    ) -> BillingProfile | None:
        """
        Provision the billing row for an organization.

        Returns:
            BillingProfile, or None if the organization already exists
        """
        now = _to_iso(datetime.now(UTC))
        conn = self._get_connection()

        try:
            conn.execute(
                """
                INSERT INTO organizations (organization_id, name, billing_email, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (organization_id, name, billing_email, now, now),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(f"Organization creation failed: {organization_id} already exists")
                return None
            raise

        logger.info(f"Created organization billing profile: {organization_id}")
        return await self.get_billing_profile(organization_id)

    @_storage_operation("Add organization member")
    async def add_member(self, organization_id: str, user_id: str, role: MemberRole | str) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO organization_members (organization_id, user_id, role, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (organization_id, user_id) DO UPDATE SET role = excluded.role
            """,
            (organization_id, user_id, MemberRole(role).value, _to_iso(datetime.now(UTC))),
        )

    @_storage_operation("Fetch member role")
    async def get_member_role(self, organization_id: str, user_id: str) -> MemberRole | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT role FROM organization_members WHERE organization_id = ? AND user_id = ?",
            (organization_id, user_id),
        ).fetchone()

        return MemberRole(row["role"]) if row else None

    # ------------------------------------------------------------------
    # Billing profile
    # ------------------------------------------------------------------

    def _row_to_profile(self, row: sqlite3.Row) -> BillingProfile:
        return BillingProfile(
            organization_id=row["organization_id"],
            billing_email=row["billing_email"],
            customer_id=row["stripe_customer_id"],
            subscription_id=row["stripe_subscription_id"],
            payment_method_id=row["stripe_payment_method_id"],
            metered_subscription_item_id=row["stripe_metered_subscription_item_id"],
            subscription_status=SubscriptionStatus(row["subscription_status"]),
            is_subscribed=bool(row["is_subscribed"]),
            subscription_plan=row["subscription_plan"],
            subscription_started_at=_from_iso(row["subscription_started_at"]),
            subscription_ends_at=_from_iso(row["subscription_ends_at"]),
            subscription_current_period_end=_from_iso(row["subscription_current_period_end"]),
            credits_balance=row["credits_balance"],
            reserved_credits=row["reserved_credits"],
            auto_recharge_enabled=bool(row["auto_recharge_enabled"]),
            auto_recharge_threshold=row["auto_recharge_threshold"],
            auto_recharge_amount=row["auto_recharge_amount"],
        )

    def _fetch_profile(self, column: str, value: str) -> BillingProfile | None:
        conn = self._get_connection()
        row = conn.execute(
            f"SELECT * FROM organizations WHERE {column} = ? LIMIT 1", (value,)
        ).fetchone()
        return self._row_to_profile(row) if row else None

    @_storage_operation("Fetch billing profile")
    async def get_billing_profile(self, organization_id: str) -> BillingProfile | None:
        return self._fetch_profile("organization_id", organization_id)

    @_storage_operation("Fetch billing profile by Stripe customer id")
    async def find_by_customer_id(self, customer_id: str) -> BillingProfile | None:
        return self._fetch_profile("stripe_customer_id", customer_id)

    @_storage_operation("Fetch billing profile by Stripe subscription id")
    async def find_by_subscription_id(self, subscription_id: str) -> BillingProfile | None:
        return self._fetch_profile("stripe_subscription_id", subscription_id)

    def _apply_patch(
        self, organization_id: str, values: dict[str, Any], columns: dict[str, str]
    ) -> BillingProfile | None:
        """Build a dynamic UPDATE for only the provided fields."""
        if not values:
            return self._fetch_profile("organization_id", organization_id)

        updates = [f"{columns[field]} = ?" for field in values]
        params = [_to_column_value(value) for value in values.values()]

        updates.append("updated_at = ?")
        params.append(_to_iso(datetime.now(UTC)))
        params.append(organization_id)

        conn = self._get_connection()
        cursor = conn.execute(
            f"UPDATE organizations SET {', '.join(updates)} WHERE organization_id = ?", params
        )
        if cursor.rowcount == 0:
            return None

        return self._fetch_profile("organization_id", organization_id)

    @_storage_operation("Update billing subscription fields")
    async def update_subscription_fields(
        self, organization_id: str, patch: SubscriptionPatch
    ) -> BillingProfile | None:
        """
        Update provider linkage and subscription state.

        Returns:
            Updated profile or None if the organization does not exist
        """
        values = patch.model_dump(include=patch.model_fields_set)
        return self._apply_patch(organization_id, values, SUBSCRIPTION_COLUMNS)

    @_storage_operation("Update billing settings")
    async def update_billing_settings(
        self, organization_id: str, update: UpdateBillingSettingsCommand
    ) -> BillingProfile | None:
        values = update.model_dump(include=update.model_fields_set)
        return self._apply_patch(organization_id, values, SETTINGS_COLUMNS)

    # ------------------------------------------------------------------
    # Credit ledger
    # ------------------------------------------------------------------

    def _row_to_ledger_entry(self, row: sqlite3.Row) -> CreditLedgerEntry:
        return CreditLedgerEntry(
            id=row["id"],
            organization_id=row["organization_id"],
            amount=row["amount"],
            entry_type=row["entry_type"],
            reason=row["reason"],
            reference_id=row["reference_id"],
            balance_after=row["balance_after"],
            metadata=json.loads(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @_storage_operation("Adjust organization credits")
    async def adjust_credits(
        self,
        organization_id: str,
        amount: int,
        entry_type: str,
        reason: str,
        reference_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditLedgerEntry | None:
        """
        Apply a signed credit adjustment and append the matching ledger entry.

        Balance update and ledger insert commit or roll back together. No floor
        is enforced: the balance may go negative.

        Returns:
            The new ledger entry, or None if the organization does not exist
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT credits_balance FROM organizations WHERE organization_id = ?",
                (organization_id,),
            ).fetchone()

            if not row:
                return None

            next_balance = row["credits_balance"] + amount
            now = _to_iso(datetime.now(UTC))

            conn.execute(
                """
                UPDATE organizations
                SET credits_balance = ?,
                    updated_at = ?
                WHERE organization_id = ?
                """,
                (next_balance, now, organization_id),
            )

            entry = CreditLedgerEntry(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                amount=amount,
                entry_type=entry_type,
                reason=reason,
                reference_id=reference_id,
                balance_after=next_balance,
                metadata=metadata or {},
                created_at=datetime.fromisoformat(now),
            )
            conn.execute(
                """
                INSERT INTO credit_ledger (
                    id, organization_id, amount, entry_type, reason,
                    reference_id, balance_after, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.organization_id,
                    entry.amount,
                    entry.entry_type,
                    entry.reason,
                    entry.reference_id,
                    entry.balance_after,
                    json.dumps(entry.metadata),
                    now,
                ),
            )

        return entry

    @_storage_operation("List credit ledger")
    async def list_credit_ledger(
        self, organization_id: str, limit: int = 200
    ) -> list[CreditLedgerEntry]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM credit_ledger
            WHERE organization_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (organization_id, limit),
        ).fetchall()
        return [self._row_to_ledger_entry(row) for row in rows]

    @_storage_operation("Sum credit ledger")
    async def sum_credit_ledger(self, organization_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM credit_ledger WHERE organization_id = ?",
            (organization_id,),
        ).fetchone()
        return int(row["total"])

    # ------------------------------------------------------------------
    # Usage records
    # ------------------------------------------------------------------

    def _row_to_usage_record(self, row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            id=row["id"],
            organization_id=row["organization_id"],
            category=row["category"],
            quantity=row["quantity"],
            unit_cost=row["unit_cost"],
            total_cost=row["total_cost"],
            reference_id=row["reference_id"],
            provider_usage_record_id=row["stripe_usage_record_id"],
            metadata=json.loads(row["metadata"]),
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _fetch_usage_by_reference(
        self, organization_id: str, reference_id: str
    ) -> UsageRecord | None:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT * FROM usage_records
            WHERE organization_id = ? AND reference_id = ?
            LIMIT 1
            """,
            (organization_id, reference_id),
        ).fetchone()
        return self._row_to_usage_record(row) if row else None

    @_storage_operation("Find usage record by reference id")
    async def find_usage_by_reference(
        self, organization_id: str, reference_id: str
    ) -> UsageRecord | None:
        return self._fetch_usage_by_reference(organization_id, reference_id)

    @_storage_operation("Record usage")
    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        """
        Insert a usage record unless one already exists for (organization, reference).

        Returns:
            The inserted record, or the pre-existing record when the unique
            index suppressed the insert
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO usage_records (
                id, organization_id, category, quantity, unit_cost, total_cost,
                reference_id, stripe_usage_record_id, metadata, recorded_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                record.id,
                record.organization_id,
                record.category,
                record.quantity,
                record.unit_cost,
                record.total_cost,
                record.reference_id,
                record.provider_usage_record_id,
                json.dumps(record.metadata),
                _to_iso(record.recorded_at),
                _to_iso(record.created_at),
            ),
        )

        if cursor.rowcount > 0:
            return record

        if record.reference_id:
            existing = self._fetch_usage_by_reference(record.organization_id, record.reference_id)
            if existing:
                logger.info(
                    "Usage insert suppressed by reference uniqueness",
                    extra={
                        "organization_id": record.organization_id,
                        "reference_id": record.reference_id,
                    },
                )
                return existing

        raise sqlite3.IntegrityError(f"Usage record {record.id} was not inserted")

    @_storage_operation("Summarize usage records for period")
    async def summarize_usage(
        self,
        organization_id: str,
        category: str,
        period_start: datetime,
        period_end: datetime,
    ) -> tuple[int, int]:
        """
        Sum quantity and total cost over [period_start, period_end] inclusive.

        Returns:
            tuple: (total_quantity, total_cost)
        """
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COALESCE(SUM(quantity), 0) AS total_quantity,
                   COALESCE(SUM(total_cost), 0) AS total_cost
            FROM usage_records
            WHERE organization_id = ?
              AND category = ?
              AND recorded_at >= ?
              AND recorded_at <= ?
            """,
            (organization_id, category, _to_iso(period_start), _to_iso(period_end)),
        ).fetchone()
        return int(row["total_quantity"]), int(row["total_cost"])

    @_storage_operation("List usage records")
    async def list_usage_records(
        self,
        organization_id: str,
        category: str | None = None,
        recorded_after: datetime | None = None,
        recorded_before: datetime | None = None,
        limit: int = 200,
    ) -> list[UsageRecord]:
        predicates = ["organization_id = ?"]
        params: list[Any] = [organization_id]

        if category:
            predicates.append("category = ?")
            params.append(category)
        if recorded_after:
            predicates.append("recorded_at >= ?")
            params.append(_to_iso(recorded_after))
        if recorded_before:
            predicates.append("recorded_at <= ?")
            params.append(_to_iso(recorded_before))

        params.append(limit)
        conn = self._get_connection()
        rows = conn.execute(
            f"""
            SELECT * FROM usage_records
            WHERE {' AND '.join(predicates)}
            ORDER BY recorded_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [self._row_to_usage_record(row) for row in rows]

    @_storage_operation("Count usage records")
    async def count_usage_records(self, organization_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM usage_records WHERE organization_id = ?",
            (organization_id,),
        ).fetchone()
        return int(row["total"])

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    def _row_to_webhook_event(self, row: sqlite3.Row) -> WebhookEvent:
        return WebhookEvent(
            id=row["id"],
            provider_event_id=row["stripe_event_id"],
            event_type=row["event_type"],
            organization_id=row["organization_id"],
            payload=json.loads(row["payload"]),
            processed_at=_from_iso(row["processed_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @_storage_operation("Check webhook idempotency")
    async def find_webhook_event(self, provider_event_id: str) -> WebhookEvent | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM webhook_events WHERE stripe_event_id = ?", (provider_event_id,)
        ).fetchone()
        return self._row_to_webhook_event(row) if row else None

    @_storage_operation("Persist webhook event")
    async def create_webhook_event(
        self,
        provider_event_id: str,
        event_type: str,
        organization_id: str | None,
        payload: dict[str, Any],
    ) -> WebhookEvent | None:
        """
        Store an inbound event.

        Returns:
            WebhookEvent, or None if the provider event id already exists
            (concurrent delivery won the insert)
        """
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            provider_event_id=provider_event_id,
            event_type=event_type,
            organization_id=organization_id,
            payload=payload,
        )

        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO webhook_events (
                    id, stripe_event_id, event_type, organization_id, payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.provider_event_id,
                    event.event_type,
                    event.organization_id,
                    json.dumps(event.payload),
                    _to_iso(event.created_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(
                    "Webhook event already stored",
                    extra={"stripe_event_id": provider_event_id},
                )
                return None
            raise

        return event

    @_storage_operation("Mark webhook event processed")
    async def mark_webhook_processed(self, event_id: str, processed_at: datetime) -> bool:
        """
        Set processed_at once. A row that is already processed is left unchanged.

        Returns:
            bool: True if this call finalized the event
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE webhook_events
            SET processed_at = ?
            WHERE id = ? AND processed_at IS NULL
            """,
            (_to_iso(processed_at), event_id),
        )
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._initialized = False
            logger.info("Billing database connection closed")


# Global database instance
_billing_db: BillingDatabase | None = None


async def get_billing_db() -> BillingDatabase:
    """
    Get global billing database instance (singleton).

    Returns:
        BillingDatabase: Initialized database
    """
    global _billing_db
    if _billing_db is None:
        from src.config import get_settings

        _billing_db = BillingDatabase(db_path=get_settings().billing.database_path)
        await _billing_db.initialize()
    return _billing_db
