"""Tests for the FastAPI service layer."""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

import api.server as server_module
from adapters.log import NullContentFetcher
from core.event_bus import EventBus
from scheduler.audit import EventBusAuditSink
from scheduler.rate_limiter import RateLimits
from scheduler.tenant_scheduler import TenantScheduler
from store.reminder_store import SqliteReminderStore
from store.retry_store import SqliteRetryStore
from store.task_store import SqliteTaskStore

T0 = datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
async def isolated_server(tmp_path, sink):
    """Patch the server module with a per-test scheduler on a temp database."""
    db = f"sqlite+aiosqlite:///{tmp_path}/api.db"
    bus = EventBus()
    sched = TenantScheduler(
        NullContentFetcher(),
        sink,
        SqliteReminderStore(db),
        task_store=SqliteTaskStore(db),
        retry_store=SqliteRetryStore(db),
        audit=EventBusAuditSink(bus),
        limits=RateLimits(max_tasks_per_tenant=3),
    )
    await sched.start()

    original = server_module._scheduler, server_module._event_bus
    server_module._scheduler = sched
    server_module._event_bus = bus
    yield sched
    await sched.shutdown()
    server_module._scheduler, server_module._event_bus = original


@pytest.fixture
async def client():
    async with AsyncClient(
        transport=ASGITransport(app=server_module.app),
        base_url="http://test",
    ) as ac:
        yield ac


async def _create(client, tenant="t1", name="digest", cron="0 8 * * *", **extra):
    return await client.post(
        f"/tenants/{tenant}/tasks",
        json={"name": name, "cron_expression": cron, **extra},
    )


# ── Health ────────────────────────────────────────────────────────────────────

async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "scheduler_running": True}


# ── Tasks ─────────────────────────────────────────────────────────────────────

async def test_create_task(client):
    r = await _create(client, description="Morning digest", kind="content_check")
    assert r.status_code == 201
    data = r.json()
    assert data["name"] == "digest"
    assert data["tenant_id"] == "t1"
    assert data["kind"] == "content_check"
    assert data["enabled"] is True
    assert data["next_run"] is not None


async def test_create_task_invalid_cron(client):
    r = await _create(client, cron="0 8 * *")
    assert r.status_code == 400
    assert "cron" in r.json()["detail"].lower()


async def test_create_task_duplicate_name(client):
    await _create(client)
    r = await _create(client, cron="0 9 * * *")
    assert r.status_code == 409


async def test_create_task_quota(client):
    for i in range(3):
        assert (await _create(client, name=f"task-{i}")).status_code == 201
    r = await _create(client, name="task-3")
    assert r.status_code == 429
    assert r.json()["detail"]["gate"] == "task_count"


async def test_create_task_validation(client):
    r = await client.post("/tenants/t1/tasks", json={"name": "x"})
    assert r.status_code == 422


async def test_create_task_with_retry_overrides(client, isolated_server):
    r = await _create(client, kind="content_check",
                      retry_interval_hours=2, max_retry_duration_hours=12)
    task = isolated_server.get_task("t1", r.json()["task_id"])
    assert task.retry_interval == timedelta(hours=2)
    assert task.max_retry_duration == timedelta(hours=12)


async def test_list_tasks_is_tenant_scoped(client):
    await _create(client, tenant="t1", name="a")
    await _create(client, tenant="t2", name="b")
    r = await client.get("/tenants/t1/tasks")
    assert r.status_code == 200
    assert [t["name"] for t in r.json()] == ["a"]


async def test_cancel_task(client):
    task_id = (await _create(client)).json()["task_id"]
    r = await client.delete(f"/tenants/t1/tasks/{task_id}")
    assert r.status_code == 204
    assert (await client.get("/tenants/t1/tasks")).json() == []
    r = await client.delete(f"/tenants/t1/tasks/{task_id}")
    assert r.status_code == 404


async def test_cancel_foreign_task_looks_missing(client):
    task_id = (await _create(client, tenant="t1")).json()["task_id"]
    foreign = await client.delete(f"/tenants/t2/tasks/{task_id}")
    missing = await client.delete("/tenants/t2/tasks/does-not-exist")
    assert foreign.status_code == missing.status_code == 404
    assert len((await client.get("/tenants/t1/tasks")).json()) == 1


async def test_disable_and_enable(client):
    task_id = (await _create(client)).json()["task_id"]
    r = await client.post(f"/tenants/t1/tasks/{task_id}/disable")
    assert r.status_code == 200
    assert r.json()["enabled"] is False
    r = await client.post(f"/tenants/t1/tasks/{task_id}/enable")
    assert r.json()["enabled"] is True


async def test_enable_unknown_task(client):
    r = await client.post("/tenants/t1/tasks/nope/enable")
    assert r.status_code == 404


# ── Reminders ─────────────────────────────────────────────────────────────────

async def test_reminder_lifecycle(client):
    later = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    r = await client.post("/tenants/t1/reminders", json={"text": "dentist", "remind_at": later})
    assert r.status_code == 201
    reminder_id = r.json()["reminder_id"]
    assert r.json()["sent"] is False

    listed = (await client.get("/tenants/t1/reminders")).json()
    assert [x["reminder_id"] for x in listed] == [reminder_id]
    assert (await client.get("/tenants/t2/reminders")).json() == []

    assert (await client.delete(f"/tenants/t2/reminders/{reminder_id}")).status_code == 404
    assert (await client.delete(f"/tenants/t1/reminders/{reminder_id}")).status_code == 204
    assert (await client.get("/tenants/t1/reminders")).json() == []


# ── Retries ───────────────────────────────────────────────────────────────────

async def test_list_and_reset_retries(client, isolated_server):
    await isolated_server.retry.increment_attempt("t1", "2025-W40", T0)

    r = await client.get("/tenants/t1/retries")
    assert r.status_code == 200
    assert r.json()[0]["period"] == "2025-W40"
    assert r.json()[0]["attempt_count"] == 1
    assert r.json()[0]["max_attempts"] == 48

    assert (await client.delete("/tenants/t1/retries/2025-W40")).status_code == 204
    assert (await client.get("/tenants/t1/retries")).json() == []
    assert (await client.delete("/tenants/t1/retries/2025-W40")).status_code == 404


# ── Audit events ──────────────────────────────────────────────────────────────

async def test_operations_publish_audit_events(client, isolated_server):
    q = server_module._event_bus.subscribe("t1")
    try:
        await _create(client)
        event = q.get_nowait()
        assert event.event_type.value == "task_created"
        assert event.details["task"] == "digest"
    finally:
        server_module._event_bus.unsubscribe("t1", q)
    assert [e.event_type.value for e in isolated_server.audit.recent("t1")] == ["task_created"]
