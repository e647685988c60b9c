"""Funnel engine: payment events, payment timeouts and customer replies."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnel.database import dialect_insert
from funnel.logging_config import LoggerAdapter, get_logger
from funnel.models import Conversation, Message
from funnel.schemas.payment import PaymentEvent
from funnel.services.delivery_service import DeliveryService
from funnel.services.events import MAX_STEPS, EventType, build_event, step_event
from funnel.services.load_balancer import LoadBalancer
from funnel.services.result import ErrorCode, Result
from funnel.services.scheduler import EventKind, ScheduledJob, Scheduler
from funnel.services.state_machine import (
    ACTIVE_STATUSES,
    ConversationStatus,
    InvalidTransitionError,
    sources_for,
    transition,
)

logger = get_logger("funnel_service")

PAID_STATUSES = (ConversationStatus.APPROVED.value, ConversationStatus.COMPLETED.value)


@dataclass
class _Emission:
    """An outbound event decided inside a session and queued for delivery after it closes."""

    payload: dict[str, Any]
    conversation_id: int
    order_code: str
    dedupe_key: Optional[str] = None
    event_id: Optional[int] = None


class FunnelService:
    def __init__(
        self,
        session_factory,
        scheduler: Scheduler,
        delivery: DeliveryService,
        load_balancer: LoadBalancer,
        *,
        payment_timeout_seconds: float = 420,
        local_timezone: str = "America/Sao_Paulo",
        payment_checker: Optional[Callable[[str], bool]] = None,
    ):
        self._session_factory = session_factory
        self.scheduler = scheduler
        self.delivery = delivery
        self.load_balancer = load_balancer
        self.payment_timeout_seconds = payment_timeout_seconds
        self.local_timezone = local_timezone
        # Fresh read of the payment status, consulted right before a step is emitted.
        self.payment_checker = payment_checker or self.is_paid

    def _now(self) -> datetime:
        return self.scheduler.now()

    def _event(self, event_type: EventType, conversation: Conversation, **extra) -> dict[str, Any]:
        return build_event(event_type, conversation, local_timezone=self.local_timezone, now=self._now(), **extra)

    # --- storage helpers ----------------------------------------------------

    def _log_message(
        self,
        db: Session,
        conversation_id: int,
        direction: str,
        content: str,
        *,
        status: str = "recorded",
    ) -> Message:
        message = Message(
            conversation_id=conversation_id,
            direction=direction,
            content=content,
            status=status,
            created_at=self._now(),
        )
        db.add(message)
        return message

    def _transition(self, db: Session, conversation_id: int, target: ConversationStatus, **values) -> bool:
        """Conditional status update; False when the row is no longer in a source state."""
        result = db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.status.in_([status.value for status in sources_for(target)]),
            )
            .values(status=target.value, updated_at=self._now(), **values)
        )
        return result.rowcount > 0

    def _insert_conversation(
        self,
        db: Session,
        event: PaymentEvent,
        channel: str,
        status: ConversationStatus,
    ) -> tuple[Conversation, bool]:
        """Create the conversation for ``event.order_code`` unless it exists. Returns (row, created)."""
        now = self._now()
        stmt = (
            dialect_insert(db, Conversation)
            .values(
                phone=event.phone,
                order_code=event.order_code,
                product=event.product,
                status=status.value,
                steps_completed=0,
                channel=channel,
                amount=event.amount,
                payment_link_ref=event.payment_link_ref,
                customer_name=event.customer_name,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["order_code"])
        )
        created = db.execute(stmt).rowcount > 0
        conversation = db.query(Conversation).filter(Conversation.order_code == event.order_code).one()
        return conversation, created

    @staticmethod
    def _event_fields(event: PaymentEvent, channel: str) -> dict[str, Any]:
        return {
            "phone": event.phone,
            "product": event.product,
            "channel": channel,
            "amount": event.amount,
            "payment_link_ref": event.payment_link_ref,
            "customer_name": event.customer_name,
        }

    def _find_active(self, db: Session, phone: str) -> Optional[Conversation]:
        return (
            db.query(Conversation)
            .filter(
                Conversation.phone == phone,
                Conversation.status.in_([status.value for status in ACTIVE_STATUSES]),
            )
            .order_by(Conversation.created_at.desc(), Conversation.id.desc())
            .first()
        )

    def _find_latest(self, db: Session, phone: str) -> Optional[Conversation]:
        return (
            db.query(Conversation)
            .filter(Conversation.phone == phone)
            .order_by(Conversation.created_at.desc(), Conversation.id.desc())
            .first()
        )

    def last_confirmed_step(self, db: Session, conversation_id: int) -> int:
        """Highest funnel step whose delivery was confirmed, 0 when none."""
        step = (
            db.query(Message.step_number)
            .filter(
                Message.conversation_id == conversation_id,
                Message.direction == "outbound",
                Message.status == "delivered",
                Message.step_number.is_not(None),
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
            .scalar()
        )
        return step or 0

    def step_delivered(self, db: Session, conversation_id: int, step: int) -> bool:
        return (
            db.query(Message.id)
            .filter(
                Message.conversation_id == conversation_id,
                Message.direction == "outbound",
                Message.status == "delivered",
                Message.step_number == step,
            )
            .first()
            is not None
        )

    def _emit(self, emission: _Emission) -> Optional[int]:
        """Hand the event to delivery; returns the queued row id, None when deduplicated."""
        if emission.event_id is not None:
            self.delivery.dispatch(emission.event_id)
            return emission.event_id
        return self.delivery.deliver(
            emission.payload,
            emission.conversation_id,
            order_code=emission.order_code,
            dedupe_key=emission.dedupe_key,
        )

    # --- payment events -----------------------------------------------------

    async def handle_payment_pending(self, event: PaymentEvent) -> Result[dict]:
        log = LoggerAdapter(logger, {"order_code": event.order_code})
        try:
            with self._session_factory() as db:
                channel = self.load_balancer.assign_channel(db, event.phone)
                conversation, created = self._insert_conversation(
                    db, event, channel, ConversationStatus.PENDING_PAYMENT
                )
                if not created:
                    if conversation.status != ConversationStatus.PENDING_PAYMENT.value:
                        db.commit()
                        log.info("Pending event ignored", context={"status": conversation.status})
                        return Result.failure(
                            f"Order {event.order_code} is already {conversation.status}", ErrorCode.IGNORED
                        )
                    db.execute(
                        update(Conversation)
                        .where(
                            Conversation.id == conversation.id,
                            Conversation.status == ConversationStatus.PENDING_PAYMENT.value,
                        )
                        .values(updated_at=self._now(), **self._event_fields(event, channel))
                    )
                self._log_message(db, conversation.id, "system", f"Payment pending: {event.order_code}")
                db.commit()
                conversation_id = conversation.id

            await self.scheduler.arm(
                EventKind.PAYMENT_TIMEOUT,
                event.order_code,
                conversation_id,
                {"orderCode": event.order_code, "timeoutSeconds": self.payment_timeout_seconds},
                self.payment_timeout_seconds,
            )
        except SQLAlchemyError as exc:
            log.error("Pending payment failed", context={"error": str(exc)})
            return Result.failure(str(exc), ErrorCode.DB_ERROR)

        log.info(
            "Payment pending, timeout armed",
            context={"conversation_id": conversation_id, "created": created, "channel": channel},
        )
        return Result.success(
            {"action": "pending", "conversation_id": conversation_id, "channel": channel, "created": created}
        )

    async def handle_payment_approved(self, event: PaymentEvent) -> Result[dict]:
        log = LoggerAdapter(logger, {"order_code": event.order_code})
        try:
            await self.scheduler.cancel(EventKind.PAYMENT_TIMEOUT, event.order_code)
            with self._session_factory() as db:
                channel = self.load_balancer.assign_channel(db, event.phone)
                conversation, created = self._insert_conversation(db, event, channel, ConversationStatus.APPROVED)
                if not created:
                    if not self._transition(
                        db, conversation.id, ConversationStatus.APPROVED, **self._event_fields(event, channel)
                    ):
                        db.commit()
                        log.info("Duplicate approval ignored", context={"status": conversation.status})
                        return Result.failure(
                            f"Order {event.order_code} is already {conversation.status}", ErrorCode.IGNORED
                        )
                    db.refresh(conversation)
                self._log_message(db, conversation.id, "system", f"Payment approved: {event.order_code}")
                db.commit()
                emission = _Emission(
                    payload=self._event(EventType.SALE_APPROVED, conversation),
                    conversation_id=conversation.id,
                    order_code=event.order_code,
                )

            queued = self._emit(emission)
        except SQLAlchemyError as exc:
            log.error("Payment approval failed", context={"error": str(exc)})
            return Result.failure(str(exc), ErrorCode.DB_ERROR)

        log.info("Payment approved", context={"conversation_id": emission.conversation_id, "queued_event_id": queued})
        return Result.success(
            {
                "action": "approved",
                "conversation_id": emission.conversation_id,
                "channel": channel,
                "queued_event_id": queued,
            }
        )

    async def handle_payment_timeout(self, job: ScheduledJob) -> bool:
        """Scheduler handler for ``payment_timeout`` rows.

        A late timer for an order that moved on is a no-op. A storage error closes
        the row with its error recorded; timeouts are not retried.
        """
        log = LoggerAdapter(logger, {"order_code": job.order_code, "event_id": job.id})
        with self._session_factory() as db:
            conversation = db.get(Conversation, job.conversation_id) if job.conversation_id else None
            if conversation is None:
                log.warning("Timeout for unknown conversation")
                return True
            if conversation.status != ConversationStatus.PENDING_PAYMENT.value:
                log.info("Timeout skipped", context={"status": conversation.status})
                return True
            if self.payment_checker(conversation.order_code):
                log.info("Timeout skipped, order already paid")
                return True

            minutes = round(self.payment_timeout_seconds / 60, 2)
            payload = self._event(EventType.PAYMENT_TIMEOUT, conversation, timeout_minutes=minutes)
            if not self._transition(db, conversation.id, ConversationStatus.TIMED_OUT):
                db.commit()
                log.info("Timeout lost race with another transition")
                return True
            self._log_message(db, conversation.id, "system", f"Payment timed out after {minutes} minutes")
            db.commit()
            emission = _Emission(payload=payload, conversation_id=conversation.id, order_code=conversation.order_code)

        queued = self._emit(emission)
        log.info("Payment timed out", context={"conversation_id": emission.conversation_id, "queued_event_id": queued})
        return True

    # --- customer replies ---------------------------------------------------

    async def handle_reply(self, phone: str, content: str, channel: Optional[str] = None) -> Result[dict]:
        """Advance the funnel by one step for an inbound customer reply.

        The next step is derived from the delivered-step log, never from a counter,
        so a retried or duplicated reply cannot skip or repeat a step.
        """
        log = LoggerAdapter(logger, {"phone": phone, "channel": channel})
        try:
            with self._session_factory() as db:
                conversation = self._find_active(db, phone)
                if conversation is None:
                    latest = self._find_latest(db, phone)
                    if latest is None:
                        log.warning("Reply from unknown phone")
                        return Result.failure(f"No conversation for {phone}", ErrorCode.NOT_FOUND)
                    self._log_message(db, latest.id, "inbound", content, status="ignored")
                    db.commit()
                    log.info("Reply for closed conversation", context={"status": latest.status})
                    return Result.success(
                        {"action": "ignored", "reason": "inactive", "conversation_id": latest.id, "status": latest.status}
                    )

                conversation_id = conversation.id
                order_code = conversation.order_code
                log = log.bind(order_code=order_code, conversation_id=conversation_id)
                inbound = self._log_message(db, conversation_id, "inbound", content, status="received")
                db.commit()

                last_step = self.last_confirmed_step(db, conversation_id)

                if conversation.status == ConversationStatus.PENDING_PAYMENT.value and self.payment_checker(
                    order_code
                ):
                    db.refresh(conversation)
                    payload = self._event(
                        EventType.CONVERTED, conversation, reply_number=last_step + 1, reply_content=content
                    )
                    if not self._transition(db, conversation_id, ConversationStatus.CONVERTED):
                        inbound.status = "ignored"
                        db.commit()
                        log.info("Conversion lost race", context={"order_code": order_code})
                        return Result.success({"action": "ignored", "reason": "raced", "conversation_id": conversation_id})
                    self._log_message(db, conversation_id, "system", f"Converted on reply {last_step + 1}")
                    db.commit()
                    action = EventType.CONVERTED.value
                    step = None
                    emission = _Emission(
                        payload=payload,
                        conversation_id=conversation_id,
                        order_code=order_code,
                        dedupe_key=f"{conversation_id}:converted",
                    )
                else:
                    step = min(last_step + 1, MAX_STEPS)
                    if self.step_delivered(db, conversation_id, step):
                        inbound.status = "ignored"
                        db.commit()
                        log.info("All steps already delivered", context={"conversation_id": conversation_id})
                        return Result.success(
                            {"action": "ignored", "reason": "steps_exhausted", "conversation_id": conversation_id}
                        )

                    payload = self._event(step_event(step), conversation, reply_number=step, reply_content=content)
                    event_id = self.delivery.enqueue(
                        payload, conversation_id, order_code=order_code, dedupe_key=f"{conversation_id}:step{step}"
                    )
                    if event_id is None:
                        inbound.status = "ignored"
                        db.commit()
                        log.info("Step already in flight", context={"conversation_id": conversation_id, "step": step})
                        return Result.success(
                            {"action": "ignored", "reason": "step_in_flight", "conversation_id": conversation_id}
                        )

                    if step == MAX_STEPS:
                        self._transition(db, conversation_id, ConversationStatus.COMPLETED, steps_completed=step)
                    else:
                        db.execute(
                            update(Conversation)
                            .where(Conversation.id == conversation_id, Conversation.steps_completed < step)
                            .values(steps_completed=step, updated_at=self._now())
                        )
                    db.commit()
                    action = step_event(step).value
                    emission = _Emission(
                        payload=payload, conversation_id=conversation_id, order_code=order_code, event_id=event_id
                    )

            if action == EventType.CONVERTED.value:
                await self.scheduler.cancel_all(order_code)
            queued = self._emit(emission)
        except SQLAlchemyError as exc:
            log.error("Reply handling failed", context={"error": str(exc)})
            return Result.failure(str(exc), ErrorCode.DB_ERROR)

        log.info(f"Reply handled: {action}", context={"conversation_id": conversation_id, "queued_event_id": queued})
        value = {"action": action, "conversation_id": conversation_id, "queued_event_id": queued}
        if step is not None:
            value["step"] = step
        return Result.success(value)

    def record_outbound(self, phone: str, content: str, channel: Optional[str] = None) -> Result[dict]:
        """Log a message the channel itself sent (e.g. by an agent) on the active conversation."""
        try:
            with self._session_factory() as db:
                conversation = self._find_active(db, phone)
                if conversation is None:
                    return Result.failure(f"No active conversation for {phone}", ErrorCode.NOT_FOUND)
                self._log_message(db, conversation.id, "outbound", content, status="recorded")
                conversation.updated_at = self._now()
                db.commit()
                return Result.success({"action": "recorded", "conversation_id": conversation.id})
        except SQLAlchemyError as exc:
            logger.error("Outbound record failed", extra={"context": {"phone": phone, "error": str(exc)}})
            return Result.failure(str(exc), ErrorCode.DB_ERROR)

    # --- operator operations ------------------------------------------------

    def is_paid(self, order_code: str) -> bool:
        with self._session_factory() as db:
            status = db.query(Conversation.status).filter(Conversation.order_code == order_code).scalar()
        return status in PAID_STATUSES

    def check_payment(self, order_code: str) -> Result[dict]:
        try:
            with self._session_factory() as db:
                conversation = db.query(Conversation).filter(Conversation.order_code == order_code).first()
                if conversation is None:
                    return Result.failure(f"Order {order_code} not found", ErrorCode.NOT_FOUND)
                paid = conversation.status in PAID_STATUSES
                return Result.success(
                    {
                        "order_code": order_code,
                        "payment": "paid" if paid else "pending",
                        "status": conversation.status,
                        "steps_completed": conversation.steps_completed,
                        "channel": conversation.channel,
                    }
                )
        except SQLAlchemyError as exc:
            return Result.failure(str(exc), ErrorCode.DB_ERROR)

    async def mark_complete(self, order_code: str) -> Result[dict]:
        log = LoggerAdapter(logger, {"order_code": order_code})
        try:
            with self._session_factory() as db:
                conversation = db.query(Conversation).filter(Conversation.order_code == order_code).first()
                if conversation is None:
                    return Result.failure(f"Order {order_code} not found", ErrorCode.NOT_FOUND)
                current = ConversationStatus(conversation.status)
                if current != ConversationStatus.COMPLETED:
                    target = transition(current, ConversationStatus.COMPLETED)
                    if not self._transition(db, conversation.id, target):
                        db.commit()
                        return Result.failure(f"Order {order_code} changed concurrently", ErrorCode.INVALID_TRANSITION)
                    self._log_message(db, conversation.id, "system", "Completed by operator")
                db.commit()
                conversation_id = conversation.id

            cancelled = await self.scheduler.cancel_all(order_code)
        except InvalidTransitionError as exc:
            return Result.failure(str(exc), ErrorCode.INVALID_TRANSITION)
        except SQLAlchemyError as exc:
            log.error("Mark complete failed", context={"error": str(exc)})
            return Result.failure(str(exc), ErrorCode.DB_ERROR)

        log.info("Conversation completed", context={"previous": current.value, "cancelled_timers": cancelled})
        return Result.success(
            {"action": "completed", "conversation_id": conversation_id, "previous_status": current.value}
        )
