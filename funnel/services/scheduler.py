"""Durable timers: every timer is a ``scheduled_events`` row plus an optional asyncio task.

The row is authoritative. In-memory tasks only make firing prompt; boot recovery and
the periodic sweep both read from the table, so a crash never loses a timer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select, update

from funnel.database import dialect_insert
from funnel.logging_config import get_logger
from funnel.models import ScheduledEvent

logger = get_logger("scheduler")


class EventKind(str, Enum):
    PAYMENT_TIMEOUT = "payment_timeout"
    DELIVERY_RETRY = "delivery_retry"


@dataclass
class ScheduledJob:
    """Detached snapshot of a claimed row, handed to kind handlers."""

    id: int
    kind: str
    order_code: str | None
    conversation_id: int | None
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3


Handler = Callable[[ScheduledJob], Awaitable[bool]]

RETRIED_KINDS = frozenset({EventKind.DELIVERY_RETRY.value})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_timezone(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _pending():
    return (
        ScheduledEvent.processed.is_(False),
        ScheduledEvent.attempts < ScheduledEvent.max_attempts,
    )


class Scheduler:
    def __init__(
        self,
        session_factory,
        *,
        sweep_interval_seconds: float = 30,
        sweep_batch_limit: int = 10,
        recovery_lookahead_hours: float = 24,
        default_max_attempts: int = 3,
        sleep_func=asyncio.sleep,
        now_func: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.sweep_interval_seconds = max(sweep_interval_seconds, 0.1)
        self.sweep_batch_limit = sweep_batch_limit
        self.recovery_lookahead = timedelta(hours=recovery_lookahead_hours)
        self.default_max_attempts = default_max_attempts
        self._sleep = sleep_func
        self._now = now_func

        self._handlers: dict[str, Handler] = {}
        self._timers: dict[int, asyncio.Task] = {}
        self._timer_kinds: dict[int, str] = {}
        self._inflight: dict[int, asyncio.Task] = {}
        self._sweep_task: asyncio.Task | None = None

    def now(self) -> datetime:
        return self._now()

    def register(self, kind: EventKind | str, handler: Handler) -> None:
        self._handlers[EventKind(kind).value] = handler

    @property
    def active_timers(self) -> int:
        return len(self._timers)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def has_timer(self, event_id: int) -> bool:
        return event_id in self._timers

    # --- arming -----------------------------------------------------------

    def persist(
        self,
        kind: EventKind | str,
        order_code: str | None,
        conversation_id: int | None,
        payload: dict[str, Any],
        delay: float,
        *,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
    ) -> int | None:
        """Insert a row without arming a timer. Returns None when ``dedupe_key`` is taken."""
        now = self._now()
        db = self._session_factory()
        try:
            stmt = (
                dialect_insert(db, ScheduledEvent)
                .values(
                    kind=EventKind(kind).value,
                    order_code=order_code,
                    conversation_id=conversation_id,
                    payload=payload,
                    dedupe_key=dedupe_key,
                    scheduled_for=now + timedelta(seconds=max(delay, 0)),
                    processed=False,
                    attempts=0,
                    max_attempts=max_attempts or self.default_max_attempts,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=["dedupe_key"])
                .returning(ScheduledEvent.id)
            )
            event_id = db.execute(stmt).scalar_one_or_none()
            db.commit()
        finally:
            db.close()

        if event_id is None:
            logger.info(
                "Scheduled event already claimed",
                extra={"context": {"kind": EventKind(kind).value, "dedupe_key": dedupe_key}},
            )
        return event_id

    async def arm(
        self,
        kind: EventKind | str,
        order_code: str | None,
        conversation_id: int | None,
        payload: dict[str, Any],
        delay: float,
        *,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
        replace: bool = True,
    ) -> int | None:
        """Persist a timer row and arm its in-memory task.

        With ``replace`` an earlier unprocessed timer of the same kind for the order is
        cancelled and marked processed, so only the newest one can ever fire.
        """
        kind = EventKind(kind)
        if replace and order_code:
            superseded = self._mark_processed(
                ScheduledEvent.order_code == order_code,
                ScheduledEvent.kind == kind.value,
            )
            if superseded:
                logger.debug(
                    "Superseded earlier timers",
                    extra={"context": {"kind": kind.value, "order_code": order_code, "ids": superseded}},
                )

        event_id = self.persist(
            kind,
            order_code,
            conversation_id,
            payload,
            delay,
            max_attempts=max_attempts,
            dedupe_key=dedupe_key,
        )
        if event_id is None:
            return None

        self._start_timer(event_id, kind.value, delay)
        logger.info(
            "Timer armed",
            extra={
                "context": {
                    "event_id": event_id,
                    "kind": kind.value,
                    "order_code": order_code,
                    "delay_seconds": round(delay, 3),
                }
            },
        )
        return event_id

    async def reschedule(self, event_id: int, delay: float, *, last_error: str | None = None) -> bool:
        db = self._session_factory()
        try:
            kind = db.execute(
                update(ScheduledEvent)
                .where(ScheduledEvent.id == event_id, ScheduledEvent.processed.is_(False))
                .values(
                    scheduled_for=self._now() + timedelta(seconds=max(delay, 0)),
                    last_error=last_error,
                )
                .returning(ScheduledEvent.kind)
            ).scalar_one_or_none()
            db.commit()
        finally:
            db.close()

        if kind is None:
            return False
        self._start_timer(event_id, kind, delay)
        return True

    def _start_timer(self, event_id: int, kind: str, delay: float) -> None:
        self._cancel_timer(event_id)
        task = asyncio.get_running_loop().create_task(self._run_timer(event_id, max(delay, 0)))
        self._timers[event_id] = task
        self._timer_kinds[event_id] = kind

    def _cancel_timer(self, event_id: int) -> bool:
        task = self._timers.pop(event_id, None)
        self._timer_kinds.pop(event_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    async def _run_timer(self, event_id: int, delay: float) -> None:
        await self._sleep(delay)
        if self._timers.get(event_id) is asyncio.current_task():
            del self._timers[event_id]
            self._timer_kinds.pop(event_id, None)
        await self._run_attempt(event_id)

    async def _run_attempt(self, event_id: int) -> bool:
        task = asyncio.current_task()
        self._inflight[event_id] = task
        try:
            return await self.execute(event_id)
        finally:
            if self._inflight.get(event_id) is task:
                del self._inflight[event_id]

    def dispatch(self, event_id: int) -> bool:
        """Run one attempt of a row on its own task, now.

        ``scheduled_for`` is left alone, so an in-flight delivery keeps its lease.
        Returns False when the row already has an attempt running.
        """
        if event_id in self._inflight:
            return False
        self._cancel_timer(event_id)
        self._inflight[event_id] = asyncio.get_running_loop().create_task(self._run_attempt(event_id))
        return True

    def _busy_ids(self) -> set[int]:
        return set(self._timers) | set(self._inflight)

    # --- cancellation -----------------------------------------------------

    def _mark_processed(self, *criteria) -> list[int]:
        db = self._session_factory()
        try:
            ids = (
                db.execute(
                    update(ScheduledEvent)
                    .where(ScheduledEvent.processed.is_(False), *criteria)
                    .values(processed=True, last_attempt_at=self._now())
                    .returning(ScheduledEvent.id)
                )
                .scalars()
                .all()
            )
            db.commit()
        finally:
            db.close()

        for event_id in ids:
            self._cancel_timer(event_id)
        return list(ids)

    async def cancel(self, kind: EventKind | str, order_code: str) -> int:
        """Disarm timers of one kind for an order without executing them."""
        cancelled = self._mark_processed(
            ScheduledEvent.order_code == order_code,
            ScheduledEvent.kind == EventKind(kind).value,
        )
        logger.info(
            "Timers cancelled",
            extra={"context": {"kind": EventKind(kind).value, "order_code": order_code, "count": len(cancelled)}},
        )
        return len(cancelled)

    async def cancel_all(self, order_code: str) -> int:
        """Disarm every pending timer and retry for an order.

        Cooperative: an outbound call already in flight is not retracted.
        """
        cancelled = self._mark_processed(ScheduledEvent.order_code == order_code)
        logger.info(
            "All timers cancelled",
            extra={"context": {"order_code": order_code, "count": len(cancelled)}},
        )
        return len(cancelled)

    async def cancel_event(self, event_id: int) -> bool:
        return bool(self._mark_processed(ScheduledEvent.id == event_id))

    # --- execution --------------------------------------------------------

    def _claim(self, event_id: int) -> ScheduledJob | None:
        db = self._session_factory()
        try:
            result = db.execute(
                update(ScheduledEvent)
                .where(ScheduledEvent.id == event_id, *_pending())
                .values(attempts=ScheduledEvent.attempts + 1, last_attempt_at=self._now())
            )
            if result.rowcount == 0:
                db.rollback()
                return None
            event = db.get(ScheduledEvent, event_id)
            job = ScheduledJob(
                id=event.id,
                kind=event.kind,
                order_code=event.order_code,
                conversation_id=event.conversation_id,
                payload=dict(event.payload or {}),
                attempts=event.attempts,
                max_attempts=event.max_attempts,
            )
            db.commit()
            return job
        finally:
            db.close()

    def record_error(self, event_id: int, error: str) -> None:
        db = self._session_factory()
        try:
            db.execute(
                update(ScheduledEvent)
                .where(ScheduledEvent.id == event_id, ScheduledEvent.processed.is_(False))
                .values(last_error=error[:500])
            )
            db.commit()
        finally:
            db.close()

    def _mark_done(self, event_id: int, error: str | None = None) -> None:
        db = self._session_factory()
        try:
            db.execute(
                update(ScheduledEvent)
                .where(ScheduledEvent.id == event_id, ScheduledEvent.processed.is_(False))
                .values(processed=True, last_error=error[:500] if error else None)
            )
            db.commit()
        finally:
            db.close()

    async def execute(self, event_id: int) -> bool:
        """Claim one attempt of a row and run its handler.

        The claim is a conditional increment of ``attempts``, so a timer and the sweep
        racing on the same row run it once. Only ``delivery_retry`` rows are retried;
        any other kind is closed after its one attempt, failed or not.
        """
        job = self._claim(event_id)
        if job is None:
            logger.debug("Event not claimable", extra={"context": {"event_id": event_id}})
            return False

        handler = self._handlers.get(job.kind)
        if handler is None:
            logger.error("No handler registered", extra={"context": {"event_id": event_id, "kind": job.kind}})
            self.record_error(event_id, f"no_handler:{job.kind}")
            return False

        try:
            ok = await handler(job)
        except Exception as exc:
            logger.error(
                "Scheduled event handler failed",
                extra={"context": {"event_id": event_id, "kind": job.kind, "error": str(exc)}},
                exc_info=True,
            )
            if job.kind in RETRIED_KINDS:
                self.record_error(event_id, str(exc))
            else:
                self._mark_done(event_id, error=str(exc))
            return False

        if ok:
            self._mark_done(event_id)
        elif job.kind not in RETRIED_KINDS:
            self._mark_done(event_id, error="handler reported failure")
        return bool(ok)

    # --- recovery and sweep -------------------------------------------------

    async def recover_on_startup(self) -> int:
        """Re-arm timers for unprocessed rows due within the look-ahead window."""
        now = self._now()
        db = self._session_factory()
        try:
            rows = db.execute(
                select(ScheduledEvent.id, ScheduledEvent.kind, ScheduledEvent.scheduled_for).where(
                    *_pending(),
                    ScheduledEvent.scheduled_for <= now + self.recovery_lookahead,
                )
            ).all()
        finally:
            db.close()

        recovered = 0
        busy = self._busy_ids()
        for event_id, kind, scheduled_for in rows:
            if event_id in busy:
                continue
            remaining = (_ensure_timezone(scheduled_for) - now).total_seconds()
            self._start_timer(event_id, kind, max(remaining, 0))
            recovered += 1

        logger.info("Timers recovered", extra={"context": {"recovered": recovered}})
        return recovered

    async def sweep(self) -> int:
        """Dispatch due rows that no timer or running attempt covers (timers lost to a crash).

        Returns the number of rows dispatched; their attempts run on their own tasks.
        """
        now = self._now()
        busy = self._busy_ids()
        db = self._session_factory()
        try:
            query = (
                select(ScheduledEvent.id)
                .where(*_pending(), ScheduledEvent.scheduled_for <= now)
                .order_by(ScheduledEvent.scheduled_for, ScheduledEvent.id)
                .limit(self.sweep_batch_limit)
            )
            if busy:
                query = query.where(ScheduledEvent.id.not_in(list(busy)))
            due = db.execute(query).scalars().all()
        finally:
            db.close()

        if due:
            logger.info("Sweep picked due events", extra={"context": {"count": len(due), "ids": list(due)}})

        return sum(1 for event_id in due if self.dispatch(event_id))

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Sweep loop failed", extra={"context": {"error": str(exc)}})

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info("Scheduler sweep started", extra={"context": {"interval": self.sweep_interval_seconds}})

    async def stop(self) -> None:
        """Cancel timers, running attempts and the sweep; their rows stay for recovery."""
        tasks = list(self._timers.values()) + list(self._inflight.values())
        for event_id in list(self._timers):
            self._cancel_timer(event_id)
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            tasks.append(self._sweep_task)
            self._sweep_task = None
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- operator views -----------------------------------------------------

    def queue_stats(self) -> dict[str, Any]:
        now = self._now()
        db = self._session_factory()
        try:

            def count(*criteria) -> int:
                return db.execute(select(func.count()).select_from(ScheduledEvent).where(*criteria)).scalar_one()

            stats = {
                "active_timers": len(self._timers),
                "due_events": count(*_pending(), ScheduledEvent.scheduled_for <= now),
                "scheduled_events": count(*_pending(), ScheduledEvent.scheduled_for > now),
                "dead_letters": count(
                    ScheduledEvent.processed.is_(False),
                    ScheduledEvent.attempts >= ScheduledEvent.max_attempts,
                ),
                "payment_timeouts": count(*_pending(), ScheduledEvent.kind == EventKind.PAYMENT_TIMEOUT.value),
            }
        finally:
            db.close()

        issues = []
        if stats["dead_letters"] > 10:
            issues.append(f"Too many dead letters: {stats['dead_letters']}")
        if stats["due_events"] > 50:
            issues.append(f"Too many overdue events: {stats['due_events']}")
        armed_timeouts = sum(1 for kind in self._timer_kinds.values() if kind == EventKind.PAYMENT_TIMEOUT.value)
        if armed_timeouts != stats["payment_timeouts"]:
            issues.append(
                f"Payment timeouts diverge: memory={armed_timeouts} store={stats['payment_timeouts']}"
            )
        stats["issues"] = issues
        stats["status"] = "healthy" if not issues else "warning"
        return stats

    def dead_letters(self, limit: int = 20) -> list[dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.execute(
                    select(ScheduledEvent)
                    .where(
                        ScheduledEvent.processed.is_(False),
                        ScheduledEvent.attempts >= ScheduledEvent.max_attempts,
                    )
                    .order_by(ScheduledEvent.created_at.desc(), ScheduledEvent.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [
                {
                    "id": row.id,
                    "kind": row.kind,
                    "order_code": row.order_code,
                    "conversation_id": row.conversation_id,
                    "event_type": (row.payload or {}).get("eventType"),
                    "attempts": row.attempts,
                    "max_attempts": row.max_attempts,
                    "last_error": row.last_error,
                    "created_at": row.created_at,
                }
                for row in rows
            ]
        finally:
            db.close()

    async def replay(self, event_id: int) -> bool:
        """Give an unprocessed row (typically a dead letter) a fresh retry budget and dispatch it."""
        db = self._session_factory()
        try:
            result = db.execute(
                update(ScheduledEvent)
                .where(ScheduledEvent.id == event_id, ScheduledEvent.processed.is_(False))
                .values(attempts=0, scheduled_for=self._now(), last_error=None)
            )
            db.commit()
            found = result.rowcount > 0
        finally:
            db.close()

        if not found:
            logger.warning("Replay target not found or already processed", extra={"context": {"event_id": event_id}})
            return False

        logger.info("Replaying event", extra={"context": {"event_id": event_id}})
        return self.dispatch(event_id)
