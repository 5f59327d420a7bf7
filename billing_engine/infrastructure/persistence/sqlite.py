import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from ...domain.errors import LeaseUnavailable, StoreFailure
from ...domain.models import (
    BILLABLE_STATUSES,
    CadenceUnit,
    Customer,
    HistoryEntry,
    PaymentOutcome,
    PaymentRecord,
    Subscription,
    SubscriptionStatus,
)
from ...domain.ports.persistence import BillingStore

_SUBSCRIPTION_COLUMNS = (
    "id",
    "customer_id",
    "status",
    "product_label",
    "amount",
    "currency",
    "cadence_unit",
    "cadence_count",
    "billing_anchor",
    "period_index",
    "current_period_start",
    "current_period_end",
    "next_charge_at",
    "trial_ends_at",
    "consecutive_failure_count",
    "cancel_at_period_end",
    "pre_pause_status",
    "cancelled_at",
    "cancellation_reason",
    "gateway_subscription_ref",
    "pending_gateway_action",
    "trial_reminder_sent_at",
    "created_at",
    "updated_at",
)


class SQLitePersistence(BillingStore):
    """SQLite-backed implementation of the billing store."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._initialize()

    def _initialize(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    name TEXT,
                    gateway_customer_ref TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    product_label TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    cadence_unit TEXT NOT NULL,
                    cadence_count INTEGER NOT NULL,
                    billing_anchor TEXT NOT NULL,
                    period_index INTEGER NOT NULL,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    next_charge_at TEXT,
                    trial_ends_at TEXT,
                    consecutive_failure_count INTEGER NOT NULL DEFAULT 0,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    pre_pause_status TEXT,
                    cancelled_at TEXT,
                    cancellation_reason TEXT,
                    gateway_subscription_ref TEXT,
                    pending_gateway_action TEXT,
                    trial_reminder_sent_at TEXT,
                    lease_owner TEXT,
                    lease_expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(customer_id) REFERENCES customers(id)
                );

                CREATE INDEX IF NOT EXISTS idx_subscriptions_due
                    ON subscriptions(status, next_charge_at);

                CREATE INDEX IF NOT EXISTS idx_subscriptions_customer_id
                    ON subscriptions(customer_id);

                CREATE INDEX IF NOT EXISTS idx_subscriptions_gateway_ref
                    ON subscriptions(gateway_subscription_ref);

                CREATE TABLE IF NOT EXISTS subscription_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    note TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(subscription_id) REFERENCES subscriptions(id)
                );

                CREATE INDEX IF NOT EXISTS idx_subscription_history_subscription
                    ON subscription_history(subscription_id, id DESC);

                CREATE TABLE IF NOT EXISTS payment_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    gateway_reference TEXT,
                    failure_reason TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(subscription_id) REFERENCES subscriptions(id)
                );

                CREATE INDEX IF NOT EXISTS idx_payment_logs_subscription
                    ON payment_logs(subscription_id, id DESC);
                """
            )

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise StoreFailure(f"SQLite write failed: {exc}") from exc

    def _fetch(self, query: str, params: Sequence[Any]) -> List[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise StoreFailure(f"SQLite read failed: {exc}") from exc

    # CustomerRepository API -----------------------------------------------
    def create_customer(self, customer: Customer) -> Customer:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO customers (id, email, name, gateway_customer_ref, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    customer.id,
                    customer.email,
                    customer.name,
                    customer.gateway_customer_ref,
                    self._iso(customer.created_at),
                ),
            )
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        rows = self._fetch("SELECT * FROM customers WHERE id = ?", (customer_id,))
        return self._row_to_customer(rows[0]) if rows else None

    # SubscriptionRepository API -------------------------------------------
    def insert_subscription(self, subscription: Subscription, history: Sequence[HistoryEntry]) -> Subscription:
        columns = ", ".join(_SUBSCRIPTION_COLUMNS)
        placeholders = ", ".join("?" for _ in _SUBSCRIPTION_COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO subscriptions ({columns}) VALUES ({placeholders})",
                self._subscription_params(subscription),
            )
            self._insert_history(conn, history)
        return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        rows = self._fetch("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        return self._row_to_subscription(rows[0]) if rows else None

    def save_subscription(
        self,
        subscription: Subscription,
        *,
        lease_owner: str,
        history: Sequence[HistoryEntry] = (),
        payments: Sequence[PaymentRecord] = (),
    ) -> Subscription:
        updates = ", ".join(f"{column} = ?" for column in _SUBSCRIPTION_COLUMNS[1:])
        params = list(self._subscription_params(subscription)[1:])
        params.extend([subscription.id, lease_owner])
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE subscriptions SET {updates} WHERE id = ? AND lease_owner = ?",
                params,
            )
            if cur.rowcount != 1:
                # Rolls the transaction back; the lease expired or was never held.
                raise LeaseUnavailable(subscription.id)
            self._insert_history(conn, history)
            for payment in payments:
                conn.execute(
                    """
                    INSERT INTO payment_logs (
                        subscription_id, amount, currency, outcome,
                        gateway_reference, failure_reason, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        payment.subscription_id,
                        str(payment.amount),
                        payment.currency,
                        payment.outcome.value,
                        payment.gateway_reference,
                        payment.failure_reason,
                        self._iso(payment.created_at),
                    ),
                )
        return subscription

    def list_subscriptions_for_customer(self, customer_id: str) -> List[Subscription]:
        rows = self._fetch(
            "SELECT * FROM subscriptions WHERE customer_id = ? ORDER BY created_at DESC",
            (customer_id,),
        )
        return [self._row_to_subscription(row) for row in rows]

    def list_due_subscriptions(self, now: datetime, limit: int) -> List[Subscription]:
        statuses = sorted(status.value for status in BILLABLE_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        rows = self._fetch(
            f"""
            SELECT * FROM subscriptions
            WHERE (status IN ({placeholders}) OR (status = ? AND cancel_at_period_end = 1))
              AND next_charge_at IS NOT NULL
              AND next_charge_at <= ?
            ORDER BY next_charge_at ASC
            LIMIT ?
            """,
            [*statuses, SubscriptionStatus.PAUSED.value, self._iso(now), limit],
        )
        return [self._row_to_subscription(row) for row in rows]

    def get_subscription_by_gateway_ref(self, gateway_subscription_ref: str) -> Optional[Subscription]:
        rows = self._fetch(
            "SELECT * FROM subscriptions WHERE gateway_subscription_ref = ? ORDER BY created_at DESC LIMIT 1",
            (gateway_subscription_ref,),
        )
        return self._row_to_subscription(rows[0]) if rows else None

    def list_trials_ending(self, before: datetime, limit: int) -> List[Subscription]:
        rows = self._fetch(
            """
            SELECT * FROM subscriptions
            WHERE status = ?
              AND trial_ends_at IS NOT NULL
              AND trial_ends_at <= ?
              AND trial_reminder_sent_at IS NULL
            ORDER BY trial_ends_at ASC
            LIMIT ?
            """,
            (SubscriptionStatus.TRIALING.value, self._iso(before), limit),
        )
        return [self._row_to_subscription(row) for row in rows]

    def list_incomplete_created_before(self, cutoff: datetime, limit: int) -> List[Subscription]:
        rows = self._fetch(
            """
            SELECT * FROM subscriptions
            WHERE status = ? AND created_at < ?
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (SubscriptionStatus.INCOMPLETE.value, self._iso(cutoff), limit),
        )
        return [self._row_to_subscription(row) for row in rows]

    def list_pending_gateway_actions(self, limit: int) -> List[Subscription]:
        rows = self._fetch(
            """
            SELECT * FROM subscriptions
            WHERE pending_gateway_action IS NOT NULL
            ORDER BY updated_at ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [self._row_to_subscription(row) for row in rows]

    # LeaseRepository API --------------------------------------------------
    def claim_subscription(self, subscription_id: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE subscriptions
                SET lease_owner = ?, lease_expires_at = ?
                WHERE id = ?
                  AND (lease_owner IS NULL OR lease_expires_at <= ?)
                """,
                (owner, self._iso(expires_at), subscription_id, self._iso(now)),
            )
            return cur.rowcount == 1

    def release_subscription(self, subscription_id: str, owner: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE subscriptions
                SET lease_owner = NULL, lease_expires_at = NULL
                WHERE id = ? AND lease_owner = ?
                """,
                (subscription_id, owner),
            )

    # HistoryRepository API ------------------------------------------------
    def get_history(self, subscription_id: str, limit: int) -> List[HistoryEntry]:
        rows = self._fetch(
            "SELECT * FROM subscription_history WHERE subscription_id = ? ORDER BY id DESC LIMIT ?",
            (subscription_id, limit),
        )
        return [self._row_to_history(row) for row in rows]

    def get_payments(self, subscription_id: str, limit: int) -> List[PaymentRecord]:
        rows = self._fetch(
            "SELECT * FROM payment_logs WHERE subscription_id = ? ORDER BY id DESC LIMIT ?",
            (subscription_id, limit),
        )
        return [self._row_to_payment(row) for row in rows]

    def has_payment(
        self,
        subscription_id: str,
        gateway_references: Sequence[Optional[str]],
        outcome: PaymentOutcome,
    ) -> bool:
        references = [reference for reference in gateway_references if reference]
        if not references:
            return False
        placeholders = ", ".join("?" for _ in references)
        rows = self._fetch(
            f"""
            SELECT 1 FROM payment_logs
            WHERE subscription_id = ? AND outcome = ? AND gateway_reference IN ({placeholders})
            LIMIT 1
            """,
            [subscription_id, outcome.value, *references],
        )
        return bool(rows)

    # Helpers ----------------------------------------------------------------
    def _insert_history(self, conn: sqlite3.Connection, history: Sequence[HistoryEntry]) -> None:
        for entry in history:
            conn.execute(
                """
                INSERT INTO subscription_history (subscription_id, action, note, actor, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (entry.subscription_id, entry.action, entry.note, entry.actor, self._iso(entry.created_at)),
            )

    def _subscription_params(self, subscription: Subscription) -> List[Any]:
        return [
            subscription.id,
            subscription.customer_id,
            subscription.status.value,
            subscription.product_label,
            str(subscription.amount),
            subscription.currency,
            subscription.cadence_unit.value,
            subscription.cadence_count,
            self._iso(subscription.billing_anchor),
            subscription.period_index,
            self._iso(subscription.current_period_start),
            self._iso(subscription.current_period_end),
            self._iso_or_none(subscription.next_charge_at),
            self._iso_or_none(subscription.trial_ends_at),
            subscription.consecutive_failure_count,
            int(subscription.cancel_at_period_end),
            subscription.pre_pause_status.value if subscription.pre_pause_status else None,
            self._iso_or_none(subscription.cancelled_at),
            subscription.cancellation_reason,
            subscription.gateway_subscription_ref,
            subscription.pending_gateway_action,
            self._iso_or_none(subscription.trial_reminder_sent_at),
            self._iso(subscription.created_at),
            self._iso(subscription.updated_at),
        ]

    @staticmethod
    def _iso(value: datetime) -> str:
        # Fixed-width UTC strings so lexical order matches chronological order.
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    @classmethod
    def _iso_or_none(cls, value: Optional[datetime]) -> Optional[str]:
        return cls._iso(value) if value is not None else None

    @staticmethod
    def _parse_datetime(value: str) -> datetime:
        result = datetime.fromisoformat(value)
        if result.tzinfo is None:
            return result.replace(tzinfo=timezone.utc)
        return result.astimezone(timezone.utc)

    def _parse_optional(self, value: Optional[str]) -> Optional[datetime]:
        return self._parse_datetime(value) if value else None

    def _row_to_customer(self, row: sqlite3.Row) -> Customer:
        return Customer(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            gateway_customer_ref=row["gateway_customer_ref"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_subscription(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            customer_id=row["customer_id"],
            status=SubscriptionStatus(row["status"]),
            product_label=row["product_label"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            cadence_unit=CadenceUnit(row["cadence_unit"]),
            cadence_count=row["cadence_count"],
            billing_anchor=self._parse_datetime(row["billing_anchor"]),
            period_index=row["period_index"],
            current_period_start=self._parse_datetime(row["current_period_start"]),
            current_period_end=self._parse_datetime(row["current_period_end"]),
            next_charge_at=self._parse_optional(row["next_charge_at"]),
            trial_ends_at=self._parse_optional(row["trial_ends_at"]),
            consecutive_failure_count=row["consecutive_failure_count"],
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            pre_pause_status=SubscriptionStatus(row["pre_pause_status"]) if row["pre_pause_status"] else None,
            cancelled_at=self._parse_optional(row["cancelled_at"]),
            cancellation_reason=row["cancellation_reason"],
            gateway_subscription_ref=row["gateway_subscription_ref"],
            pending_gateway_action=row["pending_gateway_action"],
            trial_reminder_sent_at=self._parse_optional(row["trial_reminder_sent_at"]),
            created_at=self._parse_datetime(row["created_at"]),
            updated_at=self._parse_datetime(row["updated_at"]),
        )

    def _row_to_history(self, row: sqlite3.Row) -> HistoryEntry:
        return HistoryEntry(
            id=row["id"],
            subscription_id=row["subscription_id"],
            action=row["action"],
            note=row["note"],
            actor=row["actor"],
            created_at=self._parse_datetime(row["created_at"]),
        )

    def _row_to_payment(self, row: sqlite3.Row) -> PaymentRecord:
        return PaymentRecord(
            id=row["id"],
            subscription_id=row["subscription_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            outcome=PaymentOutcome(row["outcome"]),
            gateway_reference=row["gateway_reference"],
            failure_reason=row["failure_reason"],
            created_at=self._parse_datetime(row["created_at"]),
        )
