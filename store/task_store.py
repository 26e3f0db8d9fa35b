"""TaskStore: SQLite-backed persistence for ScheduledTask."""

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import ScheduledTask

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_tasks = sa.Table(
    "scheduled_tasks",
    _metadata,
    sa.Column("task_id",    sa.String, primary_key=True),
    sa.Column("tenant_id",  sa.String, nullable=False, index=True),
    sa.Column("name",       sa.String, nullable=False),
    sa.Column("enabled",    sa.Boolean, nullable=False),
    sa.Column("task_json",  sa.Text,   nullable=False),   # full Pydantic JSON
    sa.Column("updated_at", sa.String, nullable=False),
    sa.UniqueConstraint("tenant_id", "name", name="uq_task_tenant_name"),
)


# ── Store ────────────────────────────────────────────────────────────────────

class SqliteTaskStore:
    """Persist and load ScheduledTask records via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def save(self, task: ScheduledTask) -> None:
        """Insert or update a task (upsert on task_id)."""
        row = {
            "task_id":    task.task_id,
            "tenant_id":  task.tenant_id,
            "name":       task.name,
            "enabled":    task.enabled,
            "task_json":  task.model_dump_json(),
            "updated_at": (task.updated_at or task.created_at).isoformat(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_tasks)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["task_id"],
                    set_={k: row[k] for k in ("name", "enabled", "task_json", "updated_at")},
                )
            )

    async def list_all(self) -> list[ScheduledTask]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(_tasks.c.task_json).order_by(_tasks.c.tenant_id, _tasks.c.name)
            )).fetchall()
        return [ScheduledTask.model_validate_json(r.task_json) for r in rows]

    async def delete(self, tenant_id: str, task_id: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.delete(_tasks).where(
                    _tasks.c.tenant_id == tenant_id,
                    _tasks.c.task_id == task_id,
                )
            )

    async def close(self) -> None:
        await self._engine.dispose()
