"""Outbound delivery of funnel events to the workflow engine."""

from typing import Any, Optional

import httpx

from funnel.logging_config import get_logger
from funnel.models import Message
from funnel.services.events import step_number_for
from funnel.services.scheduler import EventKind, ScheduledJob, Scheduler

logger = get_logger("delivery_service")

MAX_ERROR_LENGTH = 500


class DeliveryService:
    """Posts events with bounded linear-backoff retries.

    Every event is a ``delivery_retry`` row from its first attempt on, so a crash
    mid-request leaves a row the sweep picks up once its lease (``scheduled_for``)
    runs out. Each attempt appends a delivered or failed outbound message.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        session_factory,
        *,
        webhook_url: str,
        timeout_seconds: float = 15,
        max_attempts: int = 3,
        base_delay_seconds: float = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.scheduler = scheduler
        self._session_factory = session_factory
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self._transport = transport

    def enqueue(
        self,
        event: dict[str, Any],
        conversation_id: Optional[int],
        *,
        order_code: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Optional[int]:
        """Persist the delivery row. None when ``dedupe_key`` was already claimed."""
        return self.scheduler.persist(
            EventKind.DELIVERY_RETRY,
            order_code,
            conversation_id,
            event,
            self.timeout_seconds * 2,
            max_attempts=self.max_attempts,
            dedupe_key=dedupe_key,
        )

    def dispatch(self, event_id: int) -> bool:
        """Start the first attempt of a queued row on the scheduler's task path."""
        return self.scheduler.dispatch(event_id)

    def deliver(
        self,
        event: dict[str, Any],
        conversation_id: Optional[int],
        *,
        order_code: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Optional[int]:
        """Queue an event and start its first attempt without waiting for it.

        Returns the row id, or None when ``dedupe_key`` was already claimed.
        """
        event_id = self.enqueue(event, conversation_id, order_code=order_code, dedupe_key=dedupe_key)
        if event_id is None:
            logger.info(
                "Delivery skipped, already claimed",
                extra={"context": {"event_type": event.get("eventType"), "dedupe_key": dedupe_key}},
            )
            return None
        self.dispatch(event_id)
        return event_id

    async def _post(self, event: dict[str, Any]) -> Optional[str]:
        """Return None on a 2xx response, otherwise a short error description."""
        if not self.webhook_url:
            return "workflow webhook url not configured"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=event)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            return f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
        except httpx.TimeoutException as exc:
            return f"timeout after {self.timeout_seconds}s: {exc}"
        except httpx.HTTPError as exc:
            return f"{type(exc).__name__}: {exc}"
        return None

    def _record(
        self,
        conversation_id: Optional[int],
        event_type: Optional[str],
        status: str,
        content: str,
    ) -> None:
        if conversation_id is None:
            return
        db = self._session_factory()
        try:
            db.add(
                Message(
                    conversation_id=conversation_id,
                    direction="outbound",
                    content=content[:MAX_ERROR_LENGTH],
                    event_type=event_type,
                    step_number=step_number_for(event_type),
                    status=status,
                    created_at=self.scheduler.now(),
                )
            )
            db.commit()
        finally:
            db.close()

    async def handle_retry(self, job: ScheduledJob) -> bool:
        """Scheduler handler for ``delivery_retry`` rows: one HTTP attempt."""
        event = job.payload
        event_type = event.get("eventType")
        context = {
            "event_id": job.id,
            "event_type": event_type,
            "order_code": job.order_code,
            "attempt": job.attempts,
        }

        error = await self._post(event)
        if error is None:
            self._record(job.conversation_id, event_type, "delivered", f"{event_type}: delivered")
            logger.info("Event delivered", extra={"context": context})
            return True

        self._record(job.conversation_id, event_type, "failed", f"{event_type}: {error}")
        if job.attempts < job.max_attempts:
            delay = job.attempts * self.base_delay_seconds
            await self.scheduler.reschedule(job.id, delay, last_error=error[:MAX_ERROR_LENGTH])
            logger.warning(
                f"Delivery failed, retrying in {delay}s",
                extra={"context": {**context, "error": error}},
            )
        else:
            self.scheduler.record_error(job.id, error)
            logger.error(
                "Delivery dead-lettered",
                extra={"context": {**context, "error": error}},
            )
        return False
