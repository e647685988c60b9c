from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from funnel.logging_config import get_logger
from funnel.runtime import FunnelRuntime
from funnel.schemas.channel import ChannelWebhook, ChannelWebhookResponse
from funnel.schemas.payment import PaymentWebhook, PaymentWebhookResponse
from funnel.services.phone import InvalidPhoneError, normalize_phone

logger = get_logger("webhooks")

router = APIRouter(prefix="/webhook", tags=["webhooks"])


def get_runtime(request: Request) -> FunnelRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return runtime


@router.post("/payment", response_model=PaymentWebhookResponse)
async def payment_webhook(payload: PaymentWebhook, runtime: FunnelRuntime = Depends(get_runtime)):
    """Payment provider notification: ``approved`` and ``pending`` drive the funnel."""
    try:
        event = payload.to_event(runtime.settings.product_map)
    except InvalidPhoneError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    logger.info(
        f"Payment webhook: {event.order_code} | status: {event.status} | product: {event.product}",
        extra={"context": {"order_code": event.order_code, "status": event.status}},
    )

    if event.status == "approved":
        result = await runtime.funnel.handle_payment_approved(event)
    elif event.status == "pending":
        result = await runtime.funnel.handle_payment_pending(event)
    else:
        return PaymentWebhookResponse(
            success=True,
            message=f"Status {event.status} ignored",
            order_code=event.order_code,
            status=event.status,
            product=event.product,
        )

    if not result.ok and result.error_code == "db_error":
        raise HTTPException(status_code=500, detail=result.error)

    value = result.value or {}
    return PaymentWebhookResponse(
        success=result.ok,
        message=value.get("action", "processed") if result.ok else (result.error or "ignored"),
        order_code=event.order_code,
        status=event.status,
        product=event.product,
        conversation_id=value.get("conversation_id"),
    )


async def _process_channel_message(runtime: FunnelRuntime, phone: str, text: str, from_me: bool, instance):
    try:
        if from_me:
            result = runtime.funnel.record_outbound(phone, text, instance)
        else:
            result = await runtime.funnel.handle_reply(phone, text, instance)
        if not result.ok:
            log = logger.debug if result.ignored else logger.info
            log(
                "Channel message not applied",
                extra={"context": {"phone": phone, "error_code": result.error_code, "error": result.error}},
            )
    except Exception as exc:
        logger.error(
            "Channel message processing failed",
            extra={"context": {"phone": phone, "error": str(exc)}},
            exc_info=True,
        )


@router.post("/channel", response_model=ChannelWebhookResponse)
async def channel_webhook(
    payload: ChannelWebhook,
    background_tasks: BackgroundTasks,
    runtime: FunnelRuntime = Depends(get_runtime),
):
    """Messaging channel notification. Always acknowledged so the channel does not retry."""
    if not payload.remote_jid:
        logger.warning("Channel webhook without message key", extra={"context": {"instance": payload.instance}})
        return ChannelWebhookResponse(success=False, message="Invalid payload")

    try:
        phone = normalize_phone(payload.remote_jid.split("@", 1)[0])
    except InvalidPhoneError:
        logger.warning("Channel webhook with unparseable phone", extra={"context": {"jid": payload.remote_jid}})
        return ChannelWebhookResponse(success=False, message="Invalid phone")

    background_tasks.add_task(
        _process_channel_message, runtime, phone, payload.text, payload.from_me, payload.instance
    )
    return ChannelWebhookResponse(success=True, message="Accepted", phone=phone, from_me=payload.from_me)
