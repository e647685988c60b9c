"""Payloads posted to the workflow engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from funnel.models import Conversation
from funnel.services.state_machine import ConversationStatus

DEFAULT_CUSTOMER_NAME = "Cliente"
MAX_STEPS = 3


class EventType(str, Enum):
    SALE_APPROVED = "sale_approved"
    PAYMENT_TIMEOUT = "payment_timeout"
    STEP1 = "step1"
    STEP2 = "step2"
    STEP3 = "step3"
    CONVERTED = "converted"


def step_event(step: int) -> EventType:
    if not 1 <= step <= MAX_STEPS:
        raise ValueError(f"Step out of range: {step}")
    return EventType(f"step{step}")


def step_number_for(event_type: EventType | str | None) -> Optional[int]:
    """1-3 for step events, None for everything else."""
    if not event_type:
        return None
    value = EventType(event_type).value
    if value.startswith("step"):
        return int(value[4:])
    return None


def first_name(full_name: Optional[str]) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else DEFAULT_CUSTOMER_NAME


def build_event(
    event_type: EventType | str,
    conversation: Conversation,
    *,
    reply_number: Optional[int] = None,
    reply_content: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
    local_timezone: str = "America/Sao_Paulo",
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    # Conversations born from a pending payment keep that origin for every event.
    origin = "approved" if conversation.status == ConversationStatus.APPROVED.value else "pending"
    if EventType(event_type) == EventType.SALE_APPROVED:
        origin = "approved"

    event: dict[str, Any] = {
        "eventType": EventType(event_type).value,
        "origin": origin,
        "product": conversation.product,
        "channel": conversation.channel,
        "customer": {
            "name": first_name(conversation.customer_name),
            "fullName": conversation.customer_name or DEFAULT_CUSTOMER_NAME,
            "phone": conversation.phone,
        },
        "order": {
            "code": conversation.order_code,
            "amount": float(conversation.amount or 0),
            "paymentLinkRef": conversation.payment_link_ref,
        },
        "conversationId": conversation.id,
        "timestamp": now.isoformat(),
        "localTime": now.astimezone(ZoneInfo(local_timezone)).strftime("%Y-%m-%d %H:%M:%S"),
    }

    if reply_number is not None:
        event["reply"] = {"number": reply_number, "content": reply_content or ""}
    if timeout_minutes is not None:
        event["timeoutMinutes"] = timeout_minutes
    return event
