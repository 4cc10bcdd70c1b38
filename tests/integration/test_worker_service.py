import asyncio
import logging
import sqlite3

import pytest

from conftest import TENANT
from flowcore.models import EventEnvelope, ExecutionStatus
from flowcore.worker import WorkerService, WorkflowWorker


async def _wait_for(condition, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await condition():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_worker_consumes_queued_events(engine, recorder):
    execution = await engine.start_execution(TENANT, "approval", "1")
    service = WorkerService(engine)
    await service.start()
    try:
        await engine.enqueue_event(TENANT, execution.execution_id, "Submit", {"via": "queue"})

        async def submitted():
            current = await engine.get_execution(TENANT, execution.execution_id)
            return current.current_state == "PendingApproval"

        await _wait_for(submitted)
        stats = service.get_statistics()
        assert stats["total_events_processed"] == 1
        assert stats["total_events_succeeded"] == 1
        assert stats["total_events_failed"] == 0
        assert stats["active_event_count"] == 0
        assert recorder.count("notify_approver") == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_rejected_event_counts_as_failure(engine):
    execution = await engine.start_execution(TENANT, "approval", "1")
    worker = WorkflowWorker(engine, worker_id="w-1")
    await worker.start()
    try:
        handled = await worker.handle_envelope(
            EventEnvelope(tenant=TENANT, execution_id=execution.execution_id, event_name="Approved")
        )
        assert handled is False
        assert worker.events_failed == 1
        assert worker.last_error.startswith("ValidationError")
        assert worker.health == "degraded"
    finally:
        await worker.stop()


@pytest.mark.asyncio
async def test_poll_loop_fires_due_timers(engine):
    execution = await engine.start_execution(TENANT, "approval", "1")
    await engine.append_event(TENANT, execution.execution_id, "Submit")
    await engine.schedule_timer(
        TENANT, execution.execution_id, "nudge", "Reject", delay_seconds=0.05
    )
    service = WorkerService(engine)
    await service.start()
    try:
        async def rejected():
            current = await engine.get_execution(TENANT, execution.execution_id)
            return current.status == ExecutionStatus.COMPLETED

        await _wait_for(rejected)
        current = await engine.get_execution(TENANT, execution.execution_id)
        assert current.current_state == "Rejected"
        assert service.workers[0].timers_fired >= 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_health_reports_and_restarts_unhealthy_workers(engine):
    config = engine.config.worker.model_copy(update={"health_check_interval_seconds": 60})
    service = WorkerService(engine, config)
    await service.start()
    try:
        health = service.get_health()
        assert health["status"] == "healthy"
        assert health["worker_count"] == 1
        assert health["healthy_workers"] == 1

        broken = service.workers[0]
        for task in broken._tasks:
            task.cancel()
        await asyncio.sleep(0.01)
        assert service.get_health()["status"] == "unhealthy"

        assert await service.check_workers() == 1
        assert service.workers[0] is not broken
        assert service.get_health()["status"] == "healthy"
    finally:
        await service.stop()
    assert service.get_health()["status"] == "unhealthy"
    assert service.get_health()["worker_count"] == 0


@pytest.mark.asyncio
async def test_store_outage_requeues_queued_event(engine, recorder, monkeypatch):
    execution = await engine.start_execution(TENANT, "approval", "1")
    get_execution = engine.store.get_execution
    outage = {"remaining": 3}

    async def flaky_get_execution(tenant, execution_id):
        if outage["remaining"]:
            outage["remaining"] -= 1
            raise sqlite3.OperationalError("disk I/O error")
        return await get_execution(tenant, execution_id)

    monkeypatch.setattr(engine.store, "get_execution", flaky_get_execution)
    worker = WorkflowWorker(engine, worker_id="w-1")
    await worker.start()
    try:
        await engine.enqueue_event(TENANT, execution.execution_id, "Submit")

        async def delivered_again():
            return worker.events_succeeded == 1

        await _wait_for(delivered_again)
        assert worker.events_failed == 1
        assert worker.events_processed == 2
        assert worker.last_error.startswith("OperationalError")
        assert recorder.count("notify_approver") == 1
        assert not any(task.done() for task in worker._tasks)
        assert engine.transport.pending(engine.config.transport.topic) == 0
    finally:
        await worker.stop()


@pytest.mark.asyncio
async def test_restart_keeps_totals_and_logs_dead_consumer(engine, monkeypatch, caplog):
    caplog.set_level(logging.ERROR, logger="flowcore.worker")
    execution = await engine.start_execution(TENANT, "approval", "1")
    config = engine.config.worker.model_copy(update={"health_check_interval_seconds": 60})
    service = WorkerService(engine, config)
    await service.start()
    try:
        async def lost_ack(raw):
            raise ConnectionError("broker connection lost")

        monkeypatch.setattr(engine.transport, "ack", lost_ack)
        await engine.enqueue_event(TENANT, execution.execution_id, "Submit")

        async def consumer_died():
            return service.get_health()["status"] == "unhealthy"

        await _wait_for(consumer_died)
        monkeypatch.undo()

        assert await service.check_workers() == 1
        assert "broker connection lost" in caplog.text
        stats = service.get_statistics()
        assert stats["total_events_processed"] == 1
        assert stats["total_events_succeeded"] == 1
    finally:
        await service.stop()
    stats = service.get_statistics()
    assert stats["total_events_processed"] == 1
    assert stats["total_events_succeeded"] == 1
