from funnel.schemas.channel import ChannelWebhook, ChannelWebhookResponse
from funnel.schemas.payment import PaymentEvent, PaymentWebhook, PaymentWebhookResponse

__all__ = [
    "ChannelWebhook",
    "ChannelWebhookResponse",
    "PaymentEvent",
    "PaymentWebhook",
    "PaymentWebhookResponse",
]
