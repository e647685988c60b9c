from funnel.services.phone import InvalidPhoneError, compose_phone, normalize_phone
from funnel.services.result import Result
from funnel.services.state_machine import (
    ConversationStatus,
    InvalidTransitionError,
    can_transition,
    sources_for,
    transition,
)

__all__ = [
    "InvalidPhoneError",
    "compose_phone",
    "normalize_phone",
    "Result",
    "ConversationStatus",
    "InvalidTransitionError",
    "can_transition",
    "sources_for",
    "transition",
]
