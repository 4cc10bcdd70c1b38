"""Durable timers and recurrence rules."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from .errors import ValidationError
from .models import (
    Payload,
    TimerKind,
    WorkflowTimer,
    new_id,
    utcnow,
)
from .persistence import WorkflowStore

logger = logging.getLogger(__name__)

NAMED_INTERVALS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}

UNITS = {
    "second": "seconds",
    "minute": "minutes",
    "hour": "hours",
    "day": "days",
    "week": "weeks",
}

EVERY_PATTERN = re.compile(r"^every\s+(\d+)\s+(second|minute|hour|day|week)s?$")


def parse_recurrence(rule: str) -> timedelta:
    """Translate ``hourly``, ``daily``, ``weekly`` or ``every <n> <unit>`` to an interval."""
    text = rule.strip().lower()
    if text in NAMED_INTERVALS:
        return NAMED_INTERVALS[text]
    match = EVERY_PATTERN.match(text)
    if not match:
        raise ValidationError(f"Unsupported recurrence rule: {rule!r}")
    count = int(match.group(1))
    if count <= 0:
        raise ValidationError(f"Recurrence interval must be positive: {rule!r}")
    return timedelta(**{UNITS[match.group(2)]: count})


def next_fire_time(previous: datetime, rule: str, now: datetime) -> datetime:
    """First occurrence after ``now`` on the grid anchored at ``previous``.

    Missed occurrences are skipped rather than replayed.
    """
    interval = parse_recurrence(rule)
    following = previous + interval
    if following <= now:
        missed = (now - following) // interval + 1
        following += interval * missed
    return following


class TimerService:
    """Schedule, claim and cancel timers."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    def build(
        self,
        tenant: str,
        execution_id: str,
        name: str,
        *,
        fire_time: Optional[datetime] = None,
        delay_seconds: Optional[float] = None,
        event_name: Optional[str] = None,
        kind: TimerKind = TimerKind.EVENT,
        recurrence: Optional[str] = None,
        state_name: Optional[str] = None,
        payload: Optional[Payload | dict] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowTimer:
        """Create a validated timer without persisting it."""
        now = now or utcnow()
        if fire_time is None:
            if delay_seconds is None:
                raise ValidationError(f"Timer {name} needs a fire time or a delay")
            fire_time = now + timedelta(seconds=delay_seconds)
        if fire_time <= now:
            raise ValidationError(f"Timer {name} fire time {fire_time.isoformat()} is not in the future")
        if kind == TimerKind.EVENT and not event_name:
            raise ValidationError(f"Event timer {name} needs an event name")
        if recurrence is not None:
            parse_recurrence(recurrence)
        return WorkflowTimer(
            tenant=tenant,
            execution_id=execution_id,
            name=name,
            kind=kind,
            event_name=event_name,
            fire_time=fire_time,
            recurrence=recurrence,
            state_name=state_name,
            payload=Payload.wrap(payload),
            created_at=now,
        )

    async def schedule(self, tenant: str, execution_id: str, name: str, **kwargs) -> WorkflowTimer:
        timer = self.build(tenant, execution_id, name, **kwargs)
        await self.store.create_timer(timer)
        logger.debug(
            f"Scheduled timer {timer.name} for {execution_id} at {timer.fire_time.isoformat()}"
        )
        return timer

    def successor(self, timer: WorkflowTimer, now: datetime) -> Optional[WorkflowTimer]:
        if not timer.recurrence:
            return None
        return timer.model_copy(
            update={
                "timer_id": new_id(),
                "fire_time": next_fire_time(timer.fire_time, timer.recurrence, now),
                "created_at": now,
                "fired_at": None,
            },
            deep=True,
        )

    async def claim_due(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> list[WorkflowTimer]:
        """Claim due timers; each returned timer was claimed by this caller only."""
        now = now or utcnow()
        claimed: list[WorkflowTimer] = []
        for timer in await self.store.list_due_timers(now, limit):
            successor = self.successor(timer, now)
            if await self.store.claim_timer(timer.tenant, timer.timer_id, now, successor):
                claimed.append(timer)
            else:
                logger.debug(f"Timer {timer.timer_id} already claimed elsewhere")
        return claimed

    async def cancel_for_execution(self, tenant: str, execution_id: str) -> int:
        cancelled = await self.store.cancel_timers(tenant, execution_id)
        if cancelled:
            logger.info(f"Cancelled {cancelled} timers of execution {execution_id}")
        return cancelled

    async def cancel_for_state(self, tenant: str, execution_id: str, state_name: str) -> int:
        return await self.store.cancel_timers(tenant, execution_id, state_name)

    async def list(self, tenant: str, execution_id: str) -> list[WorkflowTimer]:
        return await self.store.list_timers(tenant, execution_id)


__all__ = ["parse_recurrence", "next_fire_time", "TimerService"]
