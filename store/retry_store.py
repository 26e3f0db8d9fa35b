"""RetryStore: SQLite-backed persistence for RetryState."""

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import RetryState

_metadata = sa.MetaData()

_retries = sa.Table(
    "retry_attempts",
    _metadata,
    sa.Column("tenant_id",  sa.String, primary_key=True),
    sa.Column("period",     sa.String, primary_key=True),
    sa.Column("state_json", sa.Text,   nullable=False),
)


class SqliteRetryStore:
    """Persist RetryState keyed by (tenant_id, period)."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def save(self, state: RetryState) -> None:
        row = {
            "tenant_id":  state.tenant_id,
            "period":     state.period,
            "state_json": state.model_dump_json(),
        }
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_retries)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["tenant_id", "period"],
                    set_={"state_json": row["state_json"]},
                )
            )

    async def list_all(self) -> list[RetryState]:
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(_retries.c.state_json).order_by(_retries.c.tenant_id, _retries.c.period)
            )).fetchall()
        return [RetryState.model_validate_json(r.state_json) for r in rows]

    async def delete(self, tenant_id: str, period: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.delete(_retries).where(
                    _retries.c.tenant_id == tenant_id,
                    _retries.c.period == period,
                )
            )

    async def close(self) -> None:
        await self._engine.dispose()
