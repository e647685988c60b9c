from funnel.models.conversation import Conversation
from funnel.models.lead import Lead
from funnel.models.message import Message
from funnel.models.scheduled_event import ScheduledEvent

__all__ = [
    "Lead",
    "Conversation",
    "Message",
    "ScheduledEvent",
]
