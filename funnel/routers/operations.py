"""Operator endpoints: payment checks, manual completion, queue and channel management."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from funnel.logging_config import get_logger
from funnel.routers.webhooks import get_runtime
from funnel.runtime import FunnelRuntime
from funnel.schemas.operations import (
    ChannelAssignmentRequest,
    ChannelAssignmentResponse,
    ChannelLoadResponse,
    CompleteResponse,
    DeadLetter,
    EventActionResponse,
    PaymentCheckResponse,
    QueueStatsResponse,
)
from funnel.services.phone import InvalidPhoneError, normalize_phone

logger = get_logger("operations")

router = APIRouter(tags=["operations"])


def require_admin_token(
    runtime: FunnelRuntime = Depends(get_runtime),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    expected = runtime.settings.admin_token
    if not expected:
        return
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.get("/check-payment/{order_code}", response_model=PaymentCheckResponse)
def check_payment(
    order_code: str,
    runtime: FunnelRuntime = Depends(get_runtime),
    _: None = Depends(require_admin_token),
):
    result = runtime.funnel.check_payment(order_code)
    if not result.ok:
        if result.error_code == "not_found":
            return PaymentCheckResponse(order_code=order_code, payment="not_found")
        raise HTTPException(status_code=500, detail=result.error)
    return PaymentCheckResponse(**result.value)


@router.post("/webhook/complete/{order_code}", response_model=CompleteResponse)
async def complete_conversation(
    order_code: str,
    runtime: FunnelRuntime = Depends(get_runtime),
    _: None = Depends(require_admin_token),
):
    result = await runtime.funnel.mark_complete(order_code)
    if not result.ok:
        status_code = {"not_found": 404, "invalid_transition": 409}.get(result.error_code, 500)
        raise HTTPException(status_code=status_code, detail=result.error)
    return CompleteResponse(
        success=True,
        message="Conversation completed",
        conversation_id=result.value["conversation_id"],
        previous_status=result.value["previous_status"],
    )


@router.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(runtime: FunnelRuntime = Depends(get_runtime), _: None = Depends(require_admin_token)):
    return QueueStatsResponse(**runtime.scheduler.queue_stats())


@router.get("/queue/dead-letters", response_model=list[DeadLetter])
def dead_letters(
    limit: int = 20,
    runtime: FunnelRuntime = Depends(get_runtime),
    _: None = Depends(require_admin_token),
):
    return [DeadLetter(**row) for row in runtime.scheduler.dead_letters(limit=min(max(limit, 1), 200))]


@router.post("/queue/events/{event_id}/replay", response_model=EventActionResponse)
async def replay_event(
    event_id: int,
    runtime: FunnelRuntime = Depends(get_runtime),
    _: None = Depends(require_admin_token),
):
    ok = await runtime.scheduler.replay(event_id)
    logger.info("Event replay requested", extra={"context": {"event_id": event_id, "ok": ok}})
    return EventActionResponse(
        success=ok,
        event_id=event_id,
        message="Event executed" if ok else "Event not executed",
    )


@router.post("/queue/events/{event_id}/cancel", response_model=EventActionResponse)
async def cancel_event(
    event_id: int,
    runtime: FunnelRuntime = Depends(get_runtime),
    _: None = Depends(require_admin_token),
):
    cancelled = await runtime.scheduler.cancel_event(event_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail="Event not found or already processed")
    return EventActionResponse(success=True, event_id=event_id, message="Event cancelled")


@router.get("/channels/load", response_model=ChannelLoadResponse)
def channel_load(runtime: FunnelRuntime = Depends(get_runtime), _: None = Depends(require_admin_token)):
    balancer = runtime.load_balancer
    with runtime.session_factory() as db:
        loads = balancer.channel_loads(db)
    return ChannelLoadResponse(
        window_days=balancer.window_days,
        active_channels=balancer.active_channels,
        loads=loads,
    )


@router.put("/leads/{phone}/channel", response_model=ChannelAssignmentResponse)
def reassign_channel(
    phone: str,
    request: ChannelAssignmentRequest,
    runtime: FunnelRuntime = Depends(get_runtime),
    _: None = Depends(require_admin_token),
):
    if request.channel not in runtime.load_balancer.channels:
        raise HTTPException(status_code=400, detail=f"Unknown channel: {request.channel}")
    try:
        normalized = normalize_phone(phone)
    except InvalidPhoneError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    with runtime.session_factory() as db:
        updated = runtime.load_balancer.reassign_channel(db, normalized, request.channel)
    if not updated:
        raise HTTPException(status_code=404, detail="Lead not found")
    return ChannelAssignmentResponse(success=True, phone=normalized, channel=request.channel)
