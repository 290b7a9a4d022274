"""SQLite storage backend for webhooks.

This module provides durable persistence for subscriptions and delivery
logs, so delivery history and stranded pending deliveries survive a
process restart.
"""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.webhooks.errors import NotFoundError
from src.webhooks.models import (
    DeliveryAttempt,
    DeliveryLogEntry,
    DeliveryStatus,
    RetryPolicy,
    Subscription,
    WebhookStats,
)
from src.webhooks.storage import DeliveryLogStore, SubscriptionStore

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = Path("data/webhooks.db")


def _ts(value: datetime | None) -> str | None:
    """Serialize a datetime so that string order matches time order."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _is_locked(exc: BaseException) -> bool:
    return isinstance(exc, aiosqlite.OperationalError) and "locked" in str(exc)


# Concurrent writers can hold the database lock briefly
_retry_locked = retry(
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, max=1),
    reraise=True,
)


class SQLiteWebhookStorage:
    """SQLite-based storage for subscriptions and delivery logs.

    Both tables live in one database file and each operation opens its own
    connection. The store contracts are served through the ``subscriptions``
    and ``logs`` views.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize the webhook storage.

        Args:
            db_path: Path to SQLite database file. Uses default if not provided.
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._logger = logger.bind(component="webhook_storage")
        self._initialized = False
        self.subscriptions = _SubscriptionView(self)
        self.logs = _DeliveryLogView(self)

    async def _ensure_initialized(self) -> None:
        """Ensure database tables exist."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS webhook_subscriptions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    events_json TEXT NOT NULL,
                    secret TEXT,
                    headers_json TEXT NOT NULL,
                    retry_policy_json TEXT NOT NULL,
                    metadata_json TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    total_triggers INTEGER NOT NULL DEFAULT 0,
                    successful_deliveries INTEGER NOT NULL DEFAULT 0,
                    failed_deliveries INTEGER NOT NULL DEFAULT 0,
                    average_response_time REAL NOT NULL DEFAULT 0.0,
                    last_triggered TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS webhook_delivery_logs (
                    id TEXT PRIMARY KEY,
                    subscription_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    attempts_json TEXT NOT NULL DEFAULT '[]',
                    final_status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (subscription_id)
                        REFERENCES webhook_subscriptions(id) ON DELETE CASCADE
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_subscriptions_owner
                ON webhook_subscriptions(owner_id, created_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_delivery_logs_subscription
                ON webhook_delivery_logs(subscription_id, created_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_delivery_logs_status
                ON webhook_delivery_logs(final_status, created_at)
            """)

            await db.commit()

        self._initialized = True
        self._logger.info("storage_initialized", db_path=str(self.db_path))

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_subscription(row: dict[str, Any]) -> Subscription:
        return Subscription(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            events=json.loads(row["events_json"]),
            secret=row["secret"],
            headers=json.loads(row["headers_json"]),
            retry_policy=RetryPolicy.model_validate_json(row["retry_policy_json"]),
            metadata=json.loads(row["metadata_json"]),
            active=bool(row["active"]),
            stats=WebhookStats(
                total_triggers=row["total_triggers"],
                successful_deliveries=row["successful_deliveries"],
                failed_deliveries=row["failed_deliveries"],
                average_response_time=row["average_response_time"],
            ),
            last_triggered=_parse_ts(row["last_triggered"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_entry(row: dict[str, Any]) -> DeliveryLogEntry:
        return DeliveryLogEntry(
            id=row["id"],
            subscription_id=row["subscription_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload_json"]),
            attempts=[
                DeliveryAttempt.model_validate(a) for a in json.loads(row["attempts_json"])
            ],
            final_status=DeliveryStatus(row["final_status"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _attempts_json(entry: DeliveryLogEntry) -> str:
        return json.dumps([a.model_dump(mode="json") for a in entry.attempts])

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @_retry_locked
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO webhook_subscriptions (
                    id, owner_id, url, events_json, secret, headers_json,
                    retry_policy_json, metadata_json, active, total_triggers,
                    successful_deliveries, failed_deliveries, average_response_time,
                    last_triggered, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.owner_id,
                    subscription.url,
                    json.dumps(subscription.events),
                    subscription.secret,
                    json.dumps(subscription.headers),
                    subscription.retry_policy.model_dump_json(),
                    json.dumps(subscription.metadata, default=str),
                    int(subscription.active),
                    subscription.stats.total_triggers,
                    subscription.stats.successful_deliveries,
                    subscription.stats.failed_deliveries,
                    float(subscription.stats.average_response_time),
                    _ts(subscription.last_triggered),
                    _ts(subscription.created_at),
                    _ts(subscription.updated_at),
                ),
            )
            await db.commit()

        self._logger.debug("subscription_saved", webhook_id=subscription.id)
        return subscription

    async def get_subscription(
        self,
        subscription_id: str,
        owner_id: str | None = None,
    ) -> Subscription | None:
        query = "SELECT * FROM webhook_subscriptions WHERE id = ?"
        params: list[Any] = [subscription_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)

        async with self._connect() as db, db.execute(query, params) as cursor:
            row = await cursor.fetchone()

        return self._row_to_subscription(dict(row)) if row else None

    @_retry_locked
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        # Stats columns are owned by increment_stats and left untouched here
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE webhook_subscriptions
                SET url = ?, events_json = ?, secret = ?, headers_json = ?,
                    retry_policy_json = ?, metadata_json = ?, active = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    subscription.url,
                    json.dumps(subscription.events),
                    subscription.secret,
                    json.dumps(subscription.headers),
                    subscription.retry_policy.model_dump_json(),
                    json.dumps(subscription.metadata, default=str),
                    int(subscription.active),
                    _ts(subscription.updated_at),
                    subscription.id,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(details={"webhook_id": subscription.id})

        return await self.get_subscription(subscription.id)

    @_retry_locked
    async def delete_subscription(self, subscription_id: str, owner_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM webhook_subscriptions WHERE id = ? AND owner_id = ?",
                (subscription_id, owner_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        async with self._connect() as db, db.execute(
            """
            SELECT * FROM webhook_subscriptions
            WHERE owner_id = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (owner_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_subscription(dict(row)) for row in rows]

    async def find_active(
        self,
        event_type: str,
        owner_id: str | None = None,
    ) -> list[Subscription]:
        query = """
            SELECT * FROM webhook_subscriptions
            WHERE active = 1
              AND EXISTS (SELECT 1 FROM json_each(events_json) WHERE value = ?)
        """
        params: list[Any] = [event_type]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY created_at ASC, rowid ASC"

        async with self._connect() as db, db.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_subscription(dict(row)) for row in rows]

    async def list_all(self) -> list[Subscription]:
        async with self._connect() as db, db.execute(
            "SELECT * FROM webhook_subscriptions ORDER BY created_at ASC, rowid ASC"
        ) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_subscription(dict(row)) for row in rows]

    @_retry_locked
    async def increment_stats(
        self,
        subscription_id: str,
        *,
        success: bool,
        response_time_ms: float,
        at: datetime,
    ) -> Subscription:
        # Right-hand sides see the pre-update row, so one statement is atomic
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE webhook_subscriptions
                SET total_triggers = total_triggers + 1,
                    successful_deliveries = successful_deliveries + :success,
                    failed_deliveries = failed_deliveries + (1 - :success),
                    average_response_time = CASE
                        WHEN :success = 1 THEN
                            (average_response_time * successful_deliveries + :response_time)
                            / (successful_deliveries + 1)
                        ELSE average_response_time
                    END,
                    last_triggered = :at
                WHERE id = :id
                """,
                {
                    "success": 1 if success else 0,
                    "response_time": float(response_time_ms),
                    "at": _ts(at),
                    "id": subscription_id,
                },
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(details={"webhook_id": subscription_id})

            async with db.execute(
                "SELECT * FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            ) as select:
                row = await select.fetchone()

        if row is None:
            raise NotFoundError(details={"webhook_id": subscription_id})
        return self._row_to_subscription(dict(row))

    # ------------------------------------------------------------------
    # Delivery logs
    # ------------------------------------------------------------------

    @_retry_locked
    async def create_entry(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO webhook_delivery_logs (
                    id, subscription_id, event_type, payload_json,
                    attempts_json, final_status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.subscription_id,
                    entry.event_type,
                    json.dumps(entry.payload, default=str),
                    self._attempts_json(entry),
                    entry.final_status.value,
                    _ts(entry.created_at),
                    _ts(entry.updated_at),
                ),
            )
            await db.commit()

        return entry

    async def get_entry(self, entry_id: str) -> DeliveryLogEntry | None:
        async with self._connect() as db, db.execute(
            "SELECT * FROM webhook_delivery_logs WHERE id = ?",
            (entry_id,),
        ) as cursor:
            row = await cursor.fetchone()

        return self._row_to_entry(dict(row)) if row else None

    @_retry_locked
    async def record_attempt(
        self,
        entry_id: str,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
    ) -> DeliveryLogEntry:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT * FROM webhook_delivery_logs WHERE id = ?",
                    (entry_id,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    raise NotFoundError(
                        "Delivery log entry not found",
                        details={"log_entry_id": entry_id},
                    )

                updated = self._row_to_entry(dict(row)).with_attempt(attempt, final_status)
                await db.execute(
                    """
                    UPDATE webhook_delivery_logs
                    SET attempts_json = ?, final_status = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        self._attempts_json(updated),
                        updated.final_status.value,
                        _ts(updated.updated_at),
                        entry_id,
                    ),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

        return updated

    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
        event_type: str | None = None,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryLogEntry]:
        conditions = ["subscription_id = ?"]
        params: list[Any] = [subscription_id]
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)
        if status:
            conditions.append("final_status = ?")
            params.append(DeliveryStatus(status).value)
        params.extend([max(limit, 0), max(skip, 0)])

        query = f"""
            SELECT * FROM webhook_delivery_logs
            WHERE {" AND ".join(conditions)}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
        """

        async with self._connect() as db, db.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_entry(dict(row)) for row in rows]

    @_retry_locked
    async def delete_for_subscription(self, subscription_id: str) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM webhook_delivery_logs WHERE subscription_id = ?",
                (subscription_id,),
            )
            await db.commit()
            return cursor.rowcount

    async def list_pending(self, created_before: datetime) -> list[DeliveryLogEntry]:
        async with self._connect() as db, db.execute(
            """
            SELECT * FROM webhook_delivery_logs
            WHERE final_status = 'pending' AND created_at < ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (_ts(created_before),),
        ) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_entry(dict(row)) for row in rows]


class _SubscriptionView(SubscriptionStore):
    """SubscriptionStore facade over a shared SQLite storage."""

    def __init__(self, storage: SQLiteWebhookStorage) -> None:
        self.storage = storage

    async def create(self, subscription: Subscription) -> Subscription:
        return await self.storage.create_subscription(subscription)

    async def get(
        self,
        subscription_id: str,
        owner_id: str | None = None,
    ) -> Subscription | None:
        return await self.storage.get_subscription(subscription_id, owner_id)

    async def save(self, subscription: Subscription) -> Subscription:
        return await self.storage.save_subscription(subscription)

    async def delete(self, subscription_id: str, owner_id: str) -> bool:
        return await self.storage.delete_subscription(subscription_id, owner_id)

    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        return await self.storage.list_by_owner(owner_id)

    async def find_active(
        self,
        event_type: str,
        owner_id: str | None = None,
    ) -> list[Subscription]:
        return await self.storage.find_active(event_type, owner_id)

    async def list_all(self) -> list[Subscription]:
        return await self.storage.list_all()

    async def increment_stats(
        self,
        subscription_id: str,
        *,
        success: bool,
        response_time_ms: float,
        at: datetime,
    ) -> Subscription:
        return await self.storage.increment_stats(
            subscription_id,
            success=success,
            response_time_ms=response_time_ms,
            at=at,
        )


class _DeliveryLogView(DeliveryLogStore):
    """DeliveryLogStore facade over a shared SQLite storage."""

    def __init__(self, storage: SQLiteWebhookStorage) -> None:
        self.storage = storage

    async def create(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        return await self.storage.create_entry(entry)

    async def get(self, entry_id: str) -> DeliveryLogEntry | None:
        return await self.storage.get_entry(entry_id)

    async def record_attempt(
        self,
        entry_id: str,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
    ) -> DeliveryLogEntry:
        return await self.storage.record_attempt(entry_id, attempt, final_status)

    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
        event_type: str | None = None,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryLogEntry]:
        return await self.storage.list_for_subscription(
            subscription_id,
            limit=limit,
            skip=skip,
            event_type=event_type,
            status=status,
        )

    async def delete_for_subscription(self, subscription_id: str) -> int:
        return await self.storage.delete_for_subscription(subscription_id)

    async def list_pending(self, created_before: datetime) -> list[DeliveryLogEntry]:
        return await self.storage.list_pending(created_before)
