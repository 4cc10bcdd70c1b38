"""Workers that fire timers, consume queued events and reconcile sync points."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
import uuid
from typing import Any, Dict, List, Optional

from .config import WorkerConfig
from .engine import WorkflowEngine
from .models import EventEnvelope
from .retry import ErrorCategory, retry_async

logger = logging.getLogger(__name__)

ERROR_WINDOW_SECONDS = 300.0

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


def new_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class WorkflowWorker:
    """One polling loop for due timers and one consumer of the event queue."""

    def __init__(
        self,
        engine: WorkflowEngine,
        config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.engine = engine
        self.config = config or engine.config.worker
        self.worker_id = worker_id or new_worker_id()
        self.running = False
        self.events_processed = 0
        self.events_succeeded = 0
        self.events_failed = 0
        self.active_events = 0
        self.timers_fired = 0
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[float] = None
        self.started_at: Optional[float] = None
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.started_at = time.monotonic()
        self._tasks = [asyncio.create_task(self._poll_loop(), name=f"{self.worker_id}-poll")]
        if self.engine.transport is not None:
            self._tasks.append(
                asyncio.create_task(self._consume_loop(), name=f"{self.worker_id}-consume")
            )
        logger.info(f"Worker {self.worker_id} started")

    async def stop(self) -> None:
        """Cancel the loops; errors of loops that had already died are logged."""
        self.running = False
        for task in self._tasks:
            task.cancel()
        outcomes = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, outcome in zip(self._tasks, outcomes):
            if isinstance(outcome, Exception):
                self._record_error(outcome)
                logger.error(f"Worker task {task.get_name()} had failed: {outcome!r}")
        self._tasks = []
        logger.info(f"Worker {self.worker_id} stopped")

    # ------------------------------------------------------------------
    # Loops
    async def run_once(self) -> int:
        """Fire due timers and reconcile sync points once; returns timers fired."""
        fired = await retry_async(
            lambda: self.engine.fire_due_timers(limit=self.config.batch_size),
            self.engine.classifier,
        )
        self.timers_fired += fired
        await retry_async(
            lambda: self.engine.reconcile_sync_points(limit=self.config.batch_size),
            self.engine.classifier,
        )
        return fired

    async def _poll_loop(self) -> None:
        while self.running:
            try:
                await self.run_once()
            except Exception as exc:
                self._record_error(exc)
                logger.exception(f"Worker {self.worker_id} poll failed")
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _consume_loop(self) -> None:
        transport = self.engine.transport
        topic = self.engine.config.transport.topic
        async for raw, envelope in transport.subscribe(topic):
            if not self.running:
                await transport.nack(raw, requeue=True)
                break
            try:
                await self._process(envelope)
            except Exception as exc:
                # Infrastructure faults go back on the queue; rejected events are dropped.
                category, _ = self.engine.classifier.category_of(exc)
                await transport.nack(raw, requeue=category == ErrorCategory.TRANSIENT)
            else:
                await transport.ack(raw)

    async def handle_envelope(self, envelope: EventEnvelope) -> bool:
        """Append a queued event; returns False if it failed."""
        try:
            await self._process(envelope)
        except Exception:
            return False
        return True

    async def _process(self, envelope: EventEnvelope) -> None:
        self.active_events += 1
        self.events_processed += 1
        try:
            await retry_async(
                lambda: self.engine.process_envelope(envelope), self.engine.classifier
            )
        except Exception as exc:
            self.events_failed += 1
            self._record_error(exc)
            logger.error(
                f"Event {envelope.event_name} for {envelope.execution_id} failed: {exc!r}"
            )
            raise
        finally:
            self.active_events -= 1
        self.events_succeeded += 1

    def _record_error(self, exc: BaseException) -> None:
        self.last_error = f"{type(exc).__name__}: {exc}"
        self.last_error_at = time.monotonic()

    # ------------------------------------------------------------------
    # Health
    @property
    def health(self) -> str:
        if not self.running or any(t.done() for t in self._tasks):
            return UNHEALTHY
        recent_error = (
            self.last_error_at is not None
            and time.monotonic() - self.last_error_at < ERROR_WINDOW_SECONDS
        )
        if recent_error or self.active_events >= self.config.concurrency_limit:
            return DEGRADED
        return HEALTHY

    def get_health(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.health,
            "running": self.running,
            "uptime_seconds": time.monotonic() - self.started_at if self.started_at else 0.0,
            "events_processed": self.events_processed,
            "events_succeeded": self.events_succeeded,
            "events_failed": self.events_failed,
            "active_events": self.active_events,
            "timers_fired": self.timers_fired,
            "last_error": self.last_error,
        }


class WorkerService:
    """Own a pool of workers and restart the ones that become unhealthy."""

    def __init__(
        self,
        engine: WorkflowEngine,
        config: Optional[WorkerConfig] = None,
    ) -> None:
        self.engine = engine
        self.config = config or engine.config.worker
        self.workers: List[WorkflowWorker] = []
        self._health_task: Optional[asyncio.Task] = None
        # Counters of workers that were stopped or replaced.
        self._retired = {"processed": 0, "succeeded": 0, "failed": 0}

    async def start(self) -> None:
        for _ in range(self.config.worker_count):
            worker = WorkflowWorker(self.engine, self.config)
            await worker.start()
            self.workers.append(worker)
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info(f"Worker service started with {len(self.workers)} workers")

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        for worker in self.workers:
            await self._retire(worker)
        self.workers = []
        logger.info("Worker service stopped")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval_seconds)
            try:
                await self.check_workers()
            except Exception:
                logger.exception("Worker health check failed")

    async def _retire(self, worker: WorkflowWorker) -> None:
        await worker.stop()
        self._retired["processed"] += worker.events_processed
        self._retired["succeeded"] += worker.events_succeeded
        self._retired["failed"] += worker.events_failed

    async def check_workers(self) -> int:
        """Replace unhealthy workers; returns how many were restarted."""
        restarted = 0
        for index, worker in enumerate(list(self.workers)):
            if worker.health != UNHEALTHY:
                continue
            logger.warning(f"Restarting unhealthy worker {worker.worker_id}")
            await self._retire(worker)
            replacement = WorkflowWorker(self.engine, self.config)
            await replacement.start()
            self.workers[index] = replacement
            restarted += 1
        return restarted

    def get_health(self) -> Dict[str, Any]:
        workers = [w.get_health() for w in self.workers]
        healthy = sum(1 for w in workers if w["status"] == HEALTHY)
        degraded = sum(1 for w in workers if w["status"] == DEGRADED)
        unhealthy = sum(1 for w in workers if w["status"] == UNHEALTHY)
        if unhealthy or not workers:
            status = UNHEALTHY
        elif degraded or len(workers) < self.config.worker_count:
            status = DEGRADED
        else:
            status = HEALTHY
        return {
            "status": status,
            "worker_count": len(workers),
            "healthy_workers": healthy,
            "degraded_workers": degraded,
            "unhealthy_workers": unhealthy,
            "workers": workers,
        }

    def get_statistics(self) -> Dict[str, int]:
        return {
            "total_events_processed": self._retired["processed"]
            + sum(w.events_processed for w in self.workers),
            "total_events_succeeded": self._retired["succeeded"]
            + sum(w.events_succeeded for w in self.workers),
            "total_events_failed": self._retired["failed"]
            + sum(w.events_failed for w in self.workers),
            "active_event_count": sum(w.active_events for w in self.workers),
        }


__all__ = ["WorkflowWorker", "WorkerService", "new_worker_id"]
