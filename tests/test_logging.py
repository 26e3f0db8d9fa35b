"""Tests for JSON logging and context propagation."""

import asyncio
import json
import logging
import sys

from core.logging_config import JsonFormatter, bind_run_context, get_run_id, get_tenant_id


def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("scheduler.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_fields():
    data = json.loads(JsonFormatter().format(_record()))
    assert data["level"] == "INFO"
    assert data["logger"] == "scheduler.test"
    assert data["msg"] == "hello"
    assert data["ts"].endswith("Z")
    assert "lineno" not in data


def test_extra_fields_are_included():
    data = json.loads(JsonFormatter().format(_record(period="2025-W40", attempts=3)))
    assert data["period"] == "2025-W40"
    assert data["attempts"] == 3


def test_exception_is_formatted():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
    data = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in data["exc"]


async def test_context_is_bound_per_task():
    async def run(tenant):
        run_id = bind_run_context(tenant)
        await asyncio.sleep(0)
        line = json.loads(JsonFormatter().format(_record()))
        return tenant, run_id, line

    results = await asyncio.gather(run("t1"), run("t2"))
    for tenant, run_id, line in results:
        assert line["tenant_id"] == tenant
        assert line["run_id"] == run_id
    assert get_tenant_id() == "-"
    assert get_run_id() == "-"


def test_explicit_extra_wins_over_context():
    async def run():
        bind_run_context("t1", run_id="abc")
        return json.loads(JsonFormatter().format(_record(tenant_id="t2")))

    line = asyncio.run(run())
    assert line["tenant_id"] == "t2"
    assert line["run_id"] == "abc"
