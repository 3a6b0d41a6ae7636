# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for the delivery pipeline.

This module provides the Persistence class that handles all database
operations used by the pipeline:

- Reference lookups (integrations, subscribers, environments, tenants, layouts)
- Message record lifecycle (create, content update, provider id update)
- Append-only execution detail storage
- Time-to-live stamping and purging of message records

Each operation opens and closes its own aiosqlite connection, which keeps
the class safe for concurrent use by several pipeline tasks.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/delivery.db")
        await persistence.init_db()

        await persistence.add_integration(Integration(...))
        message = await persistence.create_message(Message(...))
        await persistence.set_message_identifier(message.id, message.environment_id, "prov-1")
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable
from typing import Any

import aiosqlite

from .config import RetentionConfig
from .models import (
    ChannelType,
    Environment,
    ExecutionDetail,
    Integration,
    Layout,
    Message,
    Subscriber,
    Tenant,
)

SECONDS_PER_DAY = 24 * 3600

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS integrations (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL,
        name TEXT,
        organization_id TEXT NOT NULL,
        environment_id TEXT NOT NULL,
        channel TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        credentials TEXT,
        active INTEGER DEFAULT 1,
        is_primary INTEGER DEFAULT 0,
        priority INTEGER DEFAULT 0,
        conditions TEXT,
        created_at INTEGER
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_integrations_scope
    ON integrations(organization_id, environment_id, channel)
    """,
    """
    CREATE TABLE IF NOT EXISTS subscribers (
        id TEXT PRIMARY KEY,
        subscriber_id TEXT NOT NULL,
        environment_id TEXT NOT NULL,
        email TEXT,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        data TEXT,
        UNIQUE (environment_id, subscriber_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS environments (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT,
        dns TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tenants (
        id TEXT PRIMARY KEY,
        environment_id TEXT NOT NULL,
        identifier TEXT NOT NULL,
        name TEXT,
        data TEXT,
        UNIQUE (environment_id, identifier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS layouts (
        id TEXT PRIMARY KEY,
        environment_id TEXT NOT NULL,
        identifier TEXT NOT NULL,
        name TEXT,
        content TEXT,
        is_default INTEGER DEFAULT 0,
        UNIQUE (environment_id, identifier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        environment_id TEXT NOT NULL,
        notification_id TEXT,
        subscriber_id TEXT,
        template_id TEXT,
        message_template_id TEXT,
        job_id TEXT,
        transaction_id TEXT,
        template_identifier TEXT,
        channel TEXT NOT NULL,
        email TEXT,
        provider_id TEXT,
        subject TEXT,
        content TEXT,
        payload TEXT,
        overrides TEXT,
        identifier TEXT,
        created_at INTEGER,
        expire_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_job ON messages(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_expire ON messages(expire_at)",
    """
    CREATE TABLE IF NOT EXISTS execution_details (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT,
        job_id TEXT,
        notification_id TEXT,
        transaction_id TEXT,
        subscriber_id TEXT,
        organization_id TEXT,
        environment_id TEXT,
        detail TEXT NOT NULL,
        source TEXT NOT NULL,
        status TEXT NOT NULL,
        is_test INTEGER DEFAULT 0,
        is_retry INTEGER DEFAULT 0,
        raw TEXT,
        created_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_execution_details_message ON execution_details(message_id)",
    "CREATE INDEX IF NOT EXISTS idx_execution_details_job ON execution_details(job_id)",
)


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


class Persistence:
    """Async SQLite persistence for pipeline state.

    Attributes:
        db_path: Path to the SQLite database file.
        retention: Retention settings used to stamp ``expire_at``.

    Every operation opens its own connection, so the database must live in
    a file: an in-memory database would be empty on each call.
    """

    def __init__(self, db_path: str = "/data/delivery_pipeline.db", retention: RetentionConfig | None = None):
        if not db_path or db_path == ":memory:" or db_path.startswith("file::memory:"):
            raise ValueError("Persistence requires a database file path, not an in-memory database")
        self.db_path = db_path
        self.retention = retention or RetentionConfig()

    async def init_db(self) -> None:
        """Create all tables and indexes. Idempotent."""
        async with aiosqlite.connect(self.db_path) as db:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()

    # helpers -------------------------------------------------------------------
    async def _execute(self, query: str, params: Iterable[Any] = ()) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, tuple(params))
            await db.commit()
            return cursor.rowcount

    async def _fetch_one(self, query: str, params: Iterable[Any] = ()) -> dict[str, Any] | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                row = await cur.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cur.description]
                return dict(zip(cols, row, strict=True))

    async def _fetch_all(self, query: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    # Integrations ----------------------------------------------------------------
    async def add_integration(self, integration: Integration) -> None:
        """Insert or replace an integration."""
        data = integration.model_dump(mode="json")
        await self._execute(
            """
            INSERT OR REPLACE INTO integrations
            (id, identifier, name, organization_id, environment_id, channel, provider_id,
             credentials, active, is_primary, priority, conditions, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["id"],
                data["identifier"],
                data["name"],
                data["organization_id"],
                data["environment_id"],
                data["channel"],
                data["provider_id"],
                _dumps(data["credentials"]),
                1 if data["active"] else 0,
                1 if data["primary"] else 0,
                int(data["priority"]),
                _dumps(data["conditions"]),
                data["created_at"],
            ),
        )

    @staticmethod
    def _decode_integration(row: dict[str, Any]) -> Integration:
        row["credentials"] = _loads(row.get("credentials"), {})
        row["conditions"] = _loads(row.get("conditions"), [])
        row["active"] = bool(row.get("active", 1))
        row["primary"] = bool(row.pop("is_primary", 0))
        return Integration.model_validate(row)

    async def list_integrations(
        self, organization_id: str, environment_id: str, channel: ChannelType | str
    ) -> list[Integration]:
        """Return every integration (active or not) for one scope."""
        rows = await self._fetch_all(
            """
            SELECT * FROM integrations
            WHERE organization_id = ? AND environment_id = ? AND channel = ?
            ORDER BY created_at, id
            """,
            (organization_id, environment_id, ChannelType(channel).value),
        )
        return [self._decode_integration(row) for row in rows]

    async def get_integration_by_identifier(
        self, organization_id: str, environment_id: str, channel: ChannelType | str, identifier: str
    ) -> Integration | None:
        row = await self._fetch_one(
            """
            SELECT * FROM integrations
            WHERE organization_id = ? AND environment_id = ? AND channel = ? AND identifier = ?
            """,
            (organization_id, environment_id, ChannelType(channel).value, identifier),
        )
        return self._decode_integration(row) if row else None

    # Subscribers -----------------------------------------------------------------
    async def add_subscriber(self, subscriber: Subscriber) -> None:
        await self._execute(
            """
            INSERT OR REPLACE INTO subscribers
            (id, subscriber_id, environment_id, email, first_name, last_name, phone, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscriber.id,
                subscriber.subscriber_id,
                subscriber.environment_id,
                subscriber.email,
                subscriber.first_name,
                subscriber.last_name,
                subscriber.phone,
                _dumps(subscriber.data),
            ),
        )

    async def get_subscriber(self, environment_id: str, subscriber_id: str) -> Subscriber | None:
        """Fetch a subscriber by its external identifier within an environment."""
        row = await self._fetch_one(
            "SELECT * FROM subscribers WHERE environment_id = ? AND subscriber_id = ?",
            (environment_id, subscriber_id),
        )
        if not row:
            return None
        row["data"] = _loads(row.get("data"), {})
        return Subscriber.model_validate(row)

    # Environments ----------------------------------------------------------------
    async def add_environment(self, environment: Environment) -> None:
        dns = environment.dns.model_dump() if environment.dns else None
        await self._execute(
            "INSERT OR REPLACE INTO environments (id, organization_id, name, dns) VALUES (?, ?, ?, ?)",
            (environment.id, environment.organization_id, environment.name, _dumps(dns)),
        )

    async def get_environment(self, environment_id: str) -> Environment | None:
        row = await self._fetch_one("SELECT * FROM environments WHERE id = ?", (environment_id,))
        if not row:
            return None
        row["dns"] = _loads(row.get("dns"), None)
        return Environment.model_validate(row)

    # Tenants ---------------------------------------------------------------------
    async def add_tenant(self, tenant: Tenant) -> None:
        await self._execute(
            "INSERT OR REPLACE INTO tenants (id, environment_id, identifier, name, data) VALUES (?, ?, ?, ?, ?)",
            (tenant.id, tenant.environment_id, tenant.identifier, tenant.name, _dumps(tenant.data)),
        )

    async def get_tenant(self, environment_id: str, identifier: str) -> Tenant | None:
        row = await self._fetch_one(
            "SELECT * FROM tenants WHERE environment_id = ? AND identifier = ?",
            (environment_id, identifier),
        )
        if not row:
            return None
        row["data"] = _loads(row.get("data"), {})
        return Tenant.model_validate(row)

    # Layouts ---------------------------------------------------------------------
    async def add_layout(self, layout: Layout) -> None:
        await self._execute(
            """
            INSERT OR REPLACE INTO layouts (id, environment_id, identifier, name, content, is_default)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                layout.id,
                layout.environment_id,
                layout.identifier,
                layout.name,
                layout.content,
                1 if layout.is_default else 0,
            ),
        )

    @staticmethod
    def _decode_layout(row: dict[str, Any]) -> Layout:
        row["is_default"] = bool(row.get("is_default", 0))
        return Layout.model_validate(row)

    async def get_layout_by_identifier(self, environment_id: str, identifier: str) -> Layout | None:
        row = await self._fetch_one(
            "SELECT * FROM layouts WHERE environment_id = ? AND identifier = ?",
            (environment_id, identifier),
        )
        return self._decode_layout(row) if row else None

    async def get_layout(self, environment_id: str, layout_id: str) -> Layout | None:
        row = await self._fetch_one(
            "SELECT * FROM layouts WHERE environment_id = ? AND id = ?",
            (environment_id, layout_id),
        )
        return self._decode_layout(row) if row else None

    async def get_default_layout(self, environment_id: str) -> Layout | None:
        row = await self._fetch_one(
            "SELECT * FROM layouts WHERE environment_id = ? AND is_default = 1 ORDER BY id LIMIT 1",
            (environment_id,),
        )
        return self._decode_layout(row) if row else None

    # Messages --------------------------------------------------------------------
    def calc_expire_at(self, channel: ChannelType | str, start_ts: int | None = None) -> int:
        """Return the TTL timestamp for a message created at ``start_ts``.

        In-app messages keep the longer retention; every other channel uses
        the generic one.
        """
        start = start_ts if start_ts is not None else int(time.time())
        if ChannelType(channel) == ChannelType.IN_APP:
            days = self.retention.in_app_retention_days
        else:
            days = self.retention.message_retention_days
        return start + days * SECONDS_PER_DAY

    async def create_message(self, message: Message) -> Message:
        """Persist a new message record, stamping ``expire_at``.

        The retention window starts at the message ``created_at``.
        """
        stamped = message.model_copy(
            update={"expire_at": self.calc_expire_at(message.channel, message.created_at)}
        )
        data = stamped.model_dump(mode="json")
        await self._execute(
            """
            INSERT INTO messages
            (id, organization_id, environment_id, notification_id, subscriber_id, template_id,
             message_template_id, job_id, transaction_id, template_identifier, channel, email,
             provider_id, subject, content, payload, overrides, identifier, created_at, expire_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["id"],
                data["organization_id"],
                data["environment_id"],
                data["notification_id"],
                data["subscriber_id"],
                data["template_id"],
                data["message_template_id"],
                data["job_id"],
                data["transaction_id"],
                data["template_identifier"],
                data["channel"],
                data["email"],
                data["provider_id"],
                data["subject"],
                data["content"],
                _dumps(data["payload"]),
                _dumps(data["overrides"]),
                data["identifier"],
                data["created_at"],
                data["expire_at"],
            ),
        )
        return stamped

    @staticmethod
    def _decode_message(row: dict[str, Any]) -> Message:
        row["payload"] = _loads(row.get("payload"), {})
        row["overrides"] = _loads(row.get("overrides"), {})
        return Message.model_validate(row)

    async def get_message(self, message_id: str) -> Message | None:
        row = await self._fetch_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        return self._decode_message(row) if row else None

    async def list_messages(self, job_id: str | None = None) -> list[Message]:
        if job_id:
            rows = await self._fetch_all(
                "SELECT * FROM messages WHERE job_id = ? ORDER BY created_at, id", (job_id,)
            )
        else:
            rows = await self._fetch_all("SELECT * FROM messages ORDER BY created_at, id")
        return [self._decode_message(row) for row in rows]

    async def update_message_content(
        self, message_id: str, environment_id: str, subject: str, content: str
    ) -> bool:
        """Store compiled subject/content on a message. Returns True if updated."""
        rowcount = await self._execute(
            "UPDATE messages SET subject = ?, content = ? WHERE id = ? AND environment_id = ?",
            (subject, content, message_id, environment_id),
        )
        return rowcount > 0

    async def set_message_identifier(self, message_id: str, environment_id: str, identifier: str) -> bool:
        """Store the provider-assigned identifier. Returns True if updated."""
        rowcount = await self._execute(
            "UPDATE messages SET identifier = ? WHERE id = ? AND environment_id = ?",
            (identifier, message_id, environment_id),
        )
        return rowcount > 0

    async def remove_expired_messages(self, now_ts: int | None = None) -> int:
        """Delete messages whose TTL elapsed. Returns the number removed."""
        now = now_ts if now_ts is not None else int(time.time())
        return await self._execute(
            "DELETE FROM messages WHERE expire_at IS NOT NULL AND expire_at <= ?", (now,)
        )

    # Execution details -----------------------------------------------------------
    async def insert_execution_detail(self, entry: ExecutionDetail) -> int:
        """Append one audit entry and return its row id."""
        data = entry.model_dump(mode="json")
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO execution_details
                (message_id, job_id, notification_id, transaction_id, subscriber_id, organization_id,
                 environment_id, detail, source, status, is_test, is_retry, raw, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data["message_id"],
                    data["job_id"],
                    data["notification_id"],
                    data["transaction_id"],
                    data["subscriber_id"],
                    data["organization_id"],
                    data["environment_id"],
                    data["detail"],
                    data["source"],
                    data["status"],
                    1 if data["is_test"] else 0,
                    1 if data["is_retry"] else 0,
                    data["raw"],
                    data["created_at"],
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def list_execution_details(
        self, *, message_id: str | None = None, job_id: str | None = None
    ) -> list[ExecutionDetail]:
        """Return audit entries in insertion order, filtered by message or job."""
        clauses: list[str] = []
        params: list[Any] = []
        if message_id:
            clauses.append("message_id = ?")
            params.append(message_id)
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch_all(f"SELECT * FROM execution_details {where} ORDER BY id", params)
        result = []
        for row in rows:
            row["is_test"] = bool(row.get("is_test"))
            row["is_retry"] = bool(row.get("is_retry"))
            result.append(ExecutionDetail.model_validate(row))
        return result


__all__ = ["Persistence"]
