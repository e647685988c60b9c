from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PaymentCheckResponse(BaseModel):
    order_code: str
    payment: str  # paid, pending, not_found
    status: Optional[str] = None
    steps_completed: Optional[int] = None
    channel: Optional[str] = None


class CompleteResponse(BaseModel):
    success: bool
    message: str
    conversation_id: Optional[int] = None
    previous_status: Optional[str] = None


class QueueStatsResponse(BaseModel):
    status: str
    active_timers: int
    due_events: int
    scheduled_events: int
    dead_letters: int
    payment_timeouts: int
    issues: list[str] = []


class DeadLetter(BaseModel):
    id: int
    kind: str
    order_code: Optional[str] = None
    conversation_id: Optional[int] = None
    event_type: Optional[str] = None
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


class EventActionResponse(BaseModel):
    success: bool
    event_id: int
    message: str


class ChannelLoadResponse(BaseModel):
    window_days: int
    active_channels: list[str]
    loads: dict[str, int]


class ChannelAssignmentRequest(BaseModel):
    channel: str


class ChannelAssignmentResponse(BaseModel):
    success: bool
    phone: str
    channel: str
