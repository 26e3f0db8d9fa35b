"""ReminderStore: SQLite-backed persistence for Reminder."""

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import Reminder, as_utc

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

# remind_at is stored as a fixed-width UTC ISO string so lexical order == time order
_reminders = sa.Table(
    "reminders",
    _metadata,
    sa.Column("reminder_id",   sa.String,  primary_key=True),
    sa.Column("tenant_id",     sa.String,  nullable=False),
    sa.Column("remind_at",     sa.String,  nullable=False),
    sa.Column("sent",          sa.Boolean, nullable=False, default=False),
    sa.Column("reminder_json", sa.Text,    nullable=False),
    sa.Index("ix_reminders_due", "tenant_id", "remind_at", "sent"),
)


def _ts(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# ── Store ────────────────────────────────────────────────────────────────────

class SqliteReminderStore:
    """Persist pending and sent reminders via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def save(self, reminder: Reminder) -> None:
        row = {
            "reminder_id":   reminder.reminder_id,
            "tenant_id":     reminder.tenant_id,
            "remind_at":     _ts(reminder.remind_at),
            "sent":          reminder.sent,
            "reminder_json": reminder.model_dump_json(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_reminders)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["reminder_id"],
                    set_={k: row[k] for k in ("remind_at", "sent", "reminder_json")},
                )
            )

    async def get(self, reminder_id: str) -> Reminder | None:
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_reminders.c.reminder_json)
                .where(_reminders.c.reminder_id == reminder_id)
            )).fetchone()
        return Reminder.model_validate_json(row.reminder_json) if row else None

    async def delete(self, tenant_id: str, reminder_id: str) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.delete(_reminders).where(
                    _reminders.c.tenant_id == tenant_id,
                    _reminders.c.reminder_id == reminder_id,
                )
            )
        return result.rowcount > 0

    async def list_for_tenant(self, tenant_id: str, include_sent: bool = False) -> list[Reminder]:
        query = sa.select(_reminders.c.reminder_json).where(_reminders.c.tenant_id == tenant_id)
        if not include_sent:
            query = query.where(_reminders.c.sent.is_(False))
        return await self._fetch(query.order_by(_reminders.c.remind_at))

    async def list_due(self, now: datetime, tenant_id: str | None = None) -> list[Reminder]:
        """Pending reminders whose delivery time has passed, oldest first."""
        query = sa.select(_reminders.c.reminder_json).where(
            _reminders.c.sent.is_(False),
            _reminders.c.remind_at <= _ts(now),
        )
        if tenant_id is not None:
            query = query.where(_reminders.c.tenant_id == tenant_id)
        return await self._fetch(query.order_by(_reminders.c.remind_at))

    async def mark_sent(self, reminder_id: str, sent_at: datetime) -> None:
        reminder = await self.get(reminder_id)
        if reminder is None:
            return
        reminder.sent = True
        reminder.sent_at = as_utc(sent_at)
        await self.save(reminder)

    async def close(self) -> None:
        await self._engine.dispose()

    async def _fetch(self, query) -> list[Reminder]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [Reminder.model_validate_json(r.reminder_json) for r in rows]
