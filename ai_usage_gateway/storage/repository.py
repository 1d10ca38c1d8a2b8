"""
Repository pattern for data access.

Handles the append-only usage ledger, conversation persistence and
stored prompt templates.
"""

import json
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from ..core.prompts import PromptTemplate
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ChatMessage,
    Conversation,
    ErrorEntry,
    MonthlyProjection,
    PrincipalUsage,
    UsageBucket,
    UsageRecord,
    UsageSummary,
)

WEEKS_PER_MONTH = 4.33

_USAGE_COLUMNS = """
    actor_id, group_id, feature, endpoint, model, prompt_tokens,
    completion_tokens, total_tokens, cost_cents, latency_ms, success,
    error_message, request_summary, response_summary, timestamp
"""


def _format_timestamp(moment: datetime) -> str:
    """Serialize as UTC ISO-8601 with a fixed width so text order is time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _row_to_record(row: aiosqlite.Row) -> UsageRecord:
    return UsageRecord(
        actor_id=row["actor_id"],
        group_id=row["group_id"],
        feature=row["feature"],
        endpoint=row["endpoint"],
        model=row["model"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        total_tokens=row["total_tokens"],
        cost_cents=row["cost_cents"],
        latency_ms=row["latency_ms"],
        success=bool(row["success"]),
        error_message=row["error_message"],
        request_summary=row["request_summary"],
        response_summary=row["response_summary"],
        timestamp=_parse_timestamp(row["timestamp"])
    )


def _principal_filter(actor_id: Optional[str], group_id: Optional[str]) -> Tuple[List[str], List[Any]]:
    conditions = []
    params: List[Any] = []
    if actor_id is not None:
        conditions.append("actor_id = ?")
        params.append(actor_id)
    if group_id is not None:
        conditions.append("group_id = ?")
        params.append(group_id)
    return conditions, params


async def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, conversation and template tables if they don't exist.

    The ai_usage_log table is an append-only ledger.
    No UPDATE or DELETE operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    async with get_connection(db_path) as conn:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS ai_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                feature TEXT NOT NULL,
                endpoint TEXT,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cost_cents REAL NOT NULL DEFAULT 0,
                latency_ms INTEGER NOT NULL,
                success INTEGER NOT NULL,
                error_message TEXT,
                request_summary TEXT,
                response_summary TEXT,
                timestamp TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_usage_actor_time
                ON ai_usage_log (actor_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_usage_group_time
                ON ai_usage_log (group_id, timestamp);
            CREATE TABLE IF NOT EXISTS ai_conversation (
                id TEXT PRIMARY KEY,
                actor_id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                title TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS ai_message (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL REFERENCES ai_conversation (id),
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL DEFAULT 0,
                completion_tokens INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                model TEXT,
                latency_ms INTEGER,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS ai_prompt_template (
                name TEXT PRIMARY KEY,
                slug TEXT NOT NULL,
                description TEXT,
                category TEXT NOT NULL,
                system_prompt TEXT NOT NULL,
                user_prompt TEXT NOT NULL,
                model TEXT NOT NULL,
                temperature REAL NOT NULL,
                max_tokens INTEGER NOT NULL,
                variables TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """)
        await conn.commit()


class UsageRepository:
    """Append-only access to the usage ledger plus the aggregate queries
    admission and reporting need.

    Every method opens its own connection, so concurrent requests never
    share a cursor.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def initialize_schema(self) -> None:
        await initialize_schema(self.db_path)

    async def insert_usage_record(self, record: UsageRecord) -> int:
        """Append a single record to the ledger.

        Args:
            record: The usage record to persist

        Returns:
            Row id of the new entry
        """
        async with get_connection(self.db_path) as conn:
            cursor = await conn.execute(
                f"INSERT INTO ai_usage_log ({_USAGE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.actor_id,
                    record.group_id,
                    record.feature,
                    record.endpoint,
                    record.model,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.total_tokens,
                    record.cost_cents,
                    record.latency_ms,
                    int(record.success),
                    record.error_message,
                    record.request_summary,
                    record.response_summary,
                    _format_timestamp(record.timestamp)
                )
            )
            await conn.commit()
            return cursor.lastrowid

    async def sum_total_tokens(
        self,
        since: datetime,
        actor_id: Optional[str] = None,
        group_id: Optional[str] = None,
        success_only: bool = True
    ) -> int:
        """Sum total_tokens for records at or after since.

        Args:
            since: Inclusive lower bound on timestamp
            actor_id: Restrict to one actor
            group_id: Restrict to one group
            success_only: Ignore failed invocations

        Returns:
            Token sum (0 when nothing matches)
        """
        conditions, params = _principal_filter(actor_id, group_id)
        conditions.append("timestamp >= ?")
        params.append(_format_timestamp(since))
        if success_only:
            conditions.append("success = 1")

        query = (
            "SELECT COALESCE(SUM(total_tokens), 0) FROM ai_usage_log WHERE "
            + " AND ".join(conditions)
        )
        async with get_connection(self.db_path) as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return int(row[0])

    async def get_principal_usage(
        self,
        since: datetime,
        actor_id: Optional[str] = None,
        group_id: Optional[str] = None
    ) -> PrincipalUsage:
        """Count requests and sum tokens (successful or not) since a time."""
        conditions, params = _principal_filter(actor_id, group_id)
        conditions.append("timestamp >= ?")
        params.append(_format_timestamp(since))

        query = (
            "SELECT COUNT(*), COALESCE(SUM(total_tokens), 0) FROM ai_usage_log WHERE "
            + " AND ".join(conditions)
        )
        async with get_connection(self.db_path) as conn:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return PrincipalUsage(requests=int(row[0]), tokens=int(row[1]))

    async def fetch_recent_records(
        self,
        actor_id: Optional[str] = None,
        group_id: Optional[str] = None,
        feature: Optional[str] = None,
        limit: int = 100
    ) -> List[UsageRecord]:
        """Fetch recent records, newest first.

        Args:
            actor_id: Optional filter for one actor
            group_id: Optional filter for one group
            feature: Optional filter for one feature
            limit: Maximum number of records to return
        """
        conditions, params = _principal_filter(actor_id, group_id)
        if feature:
            conditions.append("feature = ?")
            params.append(feature)

        query = f"SELECT {_USAGE_COLUMNS} FROM ai_usage_log"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        async with get_connection(self.db_path) as conn:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def get_recent_errors(self, group_id: str, limit: int = 20) -> List[ErrorEntry]:
        """Failed invocations for a group, newest first."""
        async with get_connection(self.db_path) as conn:
            async with conn.execute(
                """
                SELECT feature, error_message, timestamp, actor_id
                FROM ai_usage_log
                WHERE group_id = ? AND success = 0
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (group_id, limit)
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            ErrorEntry(
                feature=row["feature"],
                error_message=row["error_message"],
                timestamp=_parse_timestamp(row["timestamp"]),
                actor_id=row["actor_id"]
            )
            for row in rows
        ]

    async def get_actor_usage_summary(
        self,
        actor_id: str,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> UsageSummary:
        """Successful usage for one actor over the last days."""
        records = await self._records_since(
            _lookback_start(days, now), actor_id=actor_id, success_only=True
        )
        return _summarize(records)

    async def get_group_usage_summary(
        self,
        group_id: str,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> UsageSummary:
        """All usage for one group over the last days, including failures."""
        records = await self._records_since(_lookback_start(days, now), group_id=group_id)
        return _summarize(records)

    async def estimate_monthly_usage(
        self,
        group_id: str,
        now: Optional[datetime] = None
    ) -> MonthlyProjection:
        """Project a month of usage from the last seven days of successes."""
        since = (now or datetime.now(timezone.utc)) - timedelta(days=7)
        async with get_connection(self.db_path) as conn:
            async with conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(total_tokens), 0), COALESCE(SUM(cost_cents), 0)
                FROM ai_usage_log
                WHERE group_id = ? AND timestamp >= ? AND success = 1
                """,
                (group_id, _format_timestamp(since))
            ) as cursor:
                row = await cursor.fetchone()

        requests, tokens, cost = int(row[0]), int(row[1]), float(row[2])
        return MonthlyProjection(
            estimated_tokens=round(tokens * WEEKS_PER_MONTH),
            estimated_cost_cents=round(cost * WEEKS_PER_MONTH, 4),
            basis=f"Based on {requests} requests over the last 7 days"
        )

    async def _records_since(
        self,
        since: datetime,
        actor_id: Optional[str] = None,
        group_id: Optional[str] = None,
        success_only: bool = False
    ) -> List[UsageRecord]:
        conditions, params = _principal_filter(actor_id, group_id)
        conditions.append("timestamp >= ?")
        params.append(_format_timestamp(since))
        if success_only:
            conditions.append("success = 1")

        query = (
            f"SELECT {_USAGE_COLUMNS} FROM ai_usage_log WHERE "
            + " AND ".join(conditions)
            + " ORDER BY timestamp ASC, id ASC"
        )
        async with get_connection(self.db_path) as conn:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]


def _lookback_start(days: int, now: Optional[datetime]) -> datetime:
    """Midnight UTC at the start of the lookback window."""
    if days <= 0:
        raise ValueError("days must be > 0")
    start = (now or datetime.now(timezone.utc)).astimezone(timezone.utc) - timedelta(days=days)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def _summarize(records: List[UsageRecord]) -> UsageSummary:
    by_feature: Dict[str, UsageBucket] = {}
    by_actor: Dict[str, UsageBucket] = {}
    by_day: Dict[str, UsageBucket] = {}
    total_tokens = 0
    total_cost = 0.0
    total_latency = 0
    successes = 0

    for record in records:
        total_tokens += record.total_tokens
        total_cost += record.cost_cents
        total_latency += record.latency_ms
        if record.success:
            successes += 1

        day = record.timestamp.astimezone(timezone.utc).date().isoformat()
        for buckets, key in ((by_feature, record.feature), (by_actor, record.actor_id), (by_day, day)):
            bucket = buckets.setdefault(key, UsageBucket())
            bucket.requests += 1
            bucket.tokens += record.total_tokens
            bucket.cost_cents += record.cost_cents

    count = len(records)
    return UsageSummary(
        total_requests=count,
        total_tokens=total_tokens,
        total_cost_cents=round(total_cost, 4),
        by_feature=by_feature,
        by_actor=dict(sorted(by_actor.items(), key=lambda item: item[1].tokens, reverse=True)),
        by_day=dict(sorted(by_day.items())),
        success_rate=successes / count if count else 1.0,
        average_latency_ms=total_latency / count if count else 0.0
    )


class ConversationRepository:
    """Persistence for chat conversations and their messages."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def create_conversation(
        self,
        actor_id: str,
        group_id: str,
        title: str = "New conversation",
        now: Optional[datetime] = None
    ) -> Conversation:
        created = now or datetime.now(timezone.utc)
        conversation = Conversation(
            id=uuid.uuid4().hex,
            actor_id=actor_id,
            group_id=group_id,
            title=title,
            status="active",
            created_at=created,
            updated_at=created
        )
        async with get_connection(self.db_path) as conn:
            await conn.execute(
                """
                INSERT INTO ai_conversation (id, actor_id, group_id, title, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    actor_id,
                    group_id,
                    title,
                    conversation.status,
                    _format_timestamp(created),
                    _format_timestamp(created)
                )
            )
            await conn.commit()
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_connection(self.db_path) as conn:
            async with conn.execute(
                "SELECT * FROM ai_conversation WHERE id = ?", (conversation_id,)
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            actor_id=row["actor_id"],
            group_id=row["group_id"],
            title=row["title"],
            status=row["status"],
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"])
        )

    async def add_message(self, message: ChatMessage) -> None:
        """Append a message and bump the conversation's updated_at."""
        async with get_connection(self.db_path) as conn:
            await conn.execute(
                """
                INSERT INTO ai_message
                (conversation_id, role, content, prompt_tokens, completion_tokens,
                 total_tokens, model, latency_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.conversation_id,
                    message.role,
                    message.content,
                    message.prompt_tokens,
                    message.completion_tokens,
                    message.total_tokens,
                    message.model,
                    message.latency_ms,
                    _format_timestamp(message.created_at)
                )
            )
            await conn.execute(
                "UPDATE ai_conversation SET updated_at = ? WHERE id = ?",
                (_format_timestamp(message.created_at), message.conversation_id)
            )
            await conn.commit()

    async def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        """Messages of a conversation in the order they were written."""
        async with get_connection(self.db_path) as conn:
            async with conn.execute(
                """
                SELECT conversation_id, role, content, prompt_tokens, completion_tokens,
                       total_tokens, model, latency_ms, created_at
                FROM ai_message
                WHERE conversation_id = ?
                ORDER BY id ASC
                """,
                (conversation_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            ChatMessage(
                conversation_id=row["conversation_id"],
                role=row["role"],
                content=row["content"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                total_tokens=row["total_tokens"],
                model=row["model"],
                latency_ms=row["latency_ms"],
                created_at=_parse_timestamp(row["created_at"])
            )
            for row in rows
        ]


def _slugify(name: str) -> str:
    return re.sub(r"\s+", "-", name.lower())


def _row_to_template(row: aiosqlite.Row) -> PromptTemplate:
    return PromptTemplate(
        name=row["name"],
        system_prompt=row["system_prompt"],
        user_prompt=row["user_prompt"],
        model_id=row["model"],
        temperature=row["temperature"],
        max_tokens=row["max_tokens"],
        variables=tuple(json.loads(row["variables"])),
        description=row["description"],
        category=row["category"]
    )


class PromptTemplateRepository:
    """Stored prompt templates, keyed by name.

    Saving an existing name overwrites it and bumps its version.
    Inactive templates are kept but never returned.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def get_active_template(self, name: str) -> Optional[PromptTemplate]:
        async with get_connection(self.db_path) as conn:
            async with conn.execute(
                "SELECT * FROM ai_prompt_template WHERE name = ? AND is_active = 1", (name,)
            ) as cursor:
                row = await cursor.fetchone()
        return None if row is None else _row_to_template(row)

    async def list_active_templates(self, category: Optional[str] = None) -> List[PromptTemplate]:
        """Active templates ordered by category, then name."""
        query = "SELECT * FROM ai_prompt_template WHERE is_active = 1"
        params: List[Any] = []
        if category is not None:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY category ASC, name ASC"

        async with get_connection(self.db_path) as conn:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_template(row) for row in rows]

    async def save_template(self, template: PromptTemplate, now: Optional[datetime] = None) -> int:
        """Insert or overwrite a template.

        Returns:
            The stored version (1 for a new template)
        """
        stamp = _format_timestamp(now or datetime.now(timezone.utc))
        async with get_connection(self.db_path) as conn:
            await conn.execute(
                """
                INSERT INTO ai_prompt_template
                (name, slug, description, category, system_prompt, user_prompt, model,
                 temperature, max_tokens, variables, is_active, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 1, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    description = excluded.description,
                    category = excluded.category,
                    system_prompt = excluded.system_prompt,
                    user_prompt = excluded.user_prompt,
                    model = excluded.model,
                    temperature = excluded.temperature,
                    max_tokens = excluded.max_tokens,
                    variables = excluded.variables,
                    version = ai_prompt_template.version + 1,
                    updated_at = excluded.updated_at
                """,
                (
                    template.name,
                    _slugify(template.name),
                    template.description,
                    template.category,
                    template.system_prompt,
                    template.user_prompt,
                    template.model_id,
                    template.temperature,
                    template.max_tokens,
                    json.dumps(list(template.variables)),
                    stamp,
                    stamp
                )
            )
            async with conn.execute(
                "SELECT version FROM ai_prompt_template WHERE name = ?", (template.name,)
            ) as cursor:
                row = await cursor.fetchone()
            await conn.commit()
        return int(row[0])

    async def set_active(self, name: str, active: bool) -> bool:
        """Enable or disable a stored template.

        Returns:
            False when no template has that name
        """
        async with get_connection(self.db_path) as conn:
            cursor = await conn.execute(
                "UPDATE ai_prompt_template SET is_active = ? WHERE name = ?",
                (int(active), name)
            )
            await conn.commit()
            return cursor.rowcount > 0
