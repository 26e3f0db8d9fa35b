"""FastAPI service layer for the tenant scheduler."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import StreamingResponse

from api.models import (
    CreateReminderRequest,
    CreateTaskRequest,
    ReminderResponse,
    RetryResponse,
    TaskResponse,
)
from core.config import load_settings
from core.event_bus import EventBus
from scheduler.audit import EventBusAuditSink
from scheduler.errors import DuplicateTaskName, InvalidCronExpression, QuotaExceeded
from scheduler.tenant_scheduler import TenantScheduler

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Built at import so routes work under ASGITransport, which skips the lifespan.

_settings = load_settings()
_event_bus = EventBus()
_audit = EventBusAuditSink(_event_bus)
_scheduler = TenantScheduler.from_settings(_settings, audit=_audit)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _scheduler.start()
    yield
    await _scheduler.shutdown()


app = FastAPI(
    title="Tenant Scheduler API",
    description="Per-tenant cron tasks, reminders and content retries.",
    version="0.1.0",
    lifespan=lifespan,
)


def _hours(value: float | None) -> timedelta | None:
    return timedelta(hours=value) if value is not None else None


def _quota_error(e: QuotaExceeded) -> HTTPException:
    return HTTPException(429, detail={"gate": e.gate, "message": str(e)})


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "scheduler_running": _scheduler.running}


# ── Tasks ─────────────────────────────────────────────────────────────────────

@app.post("/tenants/{tenant_id}/tasks", response_model=TaskResponse, status_code=201)
async def create_task(tenant_id: str, req: CreateTaskRequest):
    """Schedule a recurring task for a tenant."""
    try:
        task = await _scheduler.create_task(
            tenant_id,
            req.name,
            req.cron_expression,
            description=req.description,
            kind=req.kind,
            retry_interval=_hours(req.retry_interval_hours),
            max_retry_duration=_hours(req.max_retry_duration_hours),
        )
    except InvalidCronExpression as e:
        raise HTTPException(400, detail=str(e))
    except DuplicateTaskName as e:
        raise HTTPException(409, detail=str(e))
    except QuotaExceeded as e:
        raise _quota_error(e)
    return task.model_dump()


@app.get("/tenants/{tenant_id}/tasks", response_model=list[TaskResponse])
async def list_tasks(tenant_id: str):
    return [t.model_dump() for t in _scheduler.list_tasks(tenant_id)]


@app.delete("/tenants/{tenant_id}/tasks/{task_id}", status_code=204)
async def cancel_task(tenant_id: str, task_id: str):
    """Cancel a task.  Unknown and foreign ids get the same 404."""
    try:
        removed = await _scheduler.cancel_task(tenant_id, task_id)
    except QuotaExceeded as e:
        raise _quota_error(e)
    if not removed:
        raise HTTPException(404, detail=f"Task '{task_id}' not found")
    return Response(status_code=204)


async def _set_enabled(tenant_id: str, task_id: str, enabled: bool):
    try:
        changed = await _scheduler.set_task_enabled(tenant_id, task_id, enabled)
    except QuotaExceeded as e:
        raise _quota_error(e)
    if not changed:
        raise HTTPException(404, detail=f"Task '{task_id}' not found")
    return _scheduler.get_task(tenant_id, task_id).model_dump()


@app.post("/tenants/{tenant_id}/tasks/{task_id}/enable", response_model=TaskResponse)
async def enable_task(tenant_id: str, task_id: str):
    return await _set_enabled(tenant_id, task_id, True)


@app.post("/tenants/{tenant_id}/tasks/{task_id}/disable", response_model=TaskResponse)
async def disable_task(tenant_id: str, task_id: str):
    return await _set_enabled(tenant_id, task_id, False)


# ── Reminders ─────────────────────────────────────────────────────────────────

@app.post("/tenants/{tenant_id}/reminders", response_model=ReminderResponse, status_code=201)
async def add_reminder(tenant_id: str, req: CreateReminderRequest):
    reminder = await _scheduler.add_reminder(
        tenant_id, req.text, req.remind_at, source=req.source, created_by=req.created_by
    )
    return reminder.model_dump()


@app.get("/tenants/{tenant_id}/reminders", response_model=list[ReminderResponse])
async def list_reminders(tenant_id: str, include_sent: bool = False):
    reminders = await _scheduler.list_reminders(tenant_id, include_sent=include_sent)
    return [r.model_dump() for r in reminders]


@app.delete("/tenants/{tenant_id}/reminders/{reminder_id}", status_code=204)
async def delete_reminder(tenant_id: str, reminder_id: str):
    if not await _scheduler.delete_reminder(tenant_id, reminder_id):
        raise HTTPException(404, detail=f"Reminder '{reminder_id}' not found")
    return Response(status_code=204)


# ── Retries ───────────────────────────────────────────────────────────────────

@app.get("/tenants/{tenant_id}/retries", response_model=list[RetryResponse])
async def list_retries(tenant_id: str):
    return [s.model_dump() for s in _scheduler.list_retries(tenant_id)]


@app.delete("/tenants/{tenant_id}/retries/{period}", status_code=204)
async def reset_retry(tenant_id: str, period: str):
    """Clear a retry state so the period can be fetched again."""
    if not await _scheduler.reset_retry(tenant_id, period):
        raise HTTPException(404, detail=f"No retry state for period '{period}'")
    return Response(status_code=204)


# ── Event stream ──────────────────────────────────────────────────────────────

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@app.get("/tenants/{tenant_id}/events")
async def stream_events(tenant_id: str):
    """Stream the tenant's audit events as Server-Sent Events.

    Each event is a JSON-encoded AuditEvent on a ``data:`` line.  A comment
    line (``: heartbeat``) is sent every 30 s to keep the connection alive.
    """
    q = _event_bus.subscribe(tenant_id)

    async def generator():
        try:
            yield ": subscribed\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=30.0)
                    yield f"data: {event.model_dump_json()}\n\n"
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            _event_bus.unsubscribe(tenant_id, q)

    return StreamingResponse(generator(), media_type="text/event-stream", headers=_SSE_HEADERS)
