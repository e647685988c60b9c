from enum import Enum


class ConversationStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    APPROVED = "approved"
    CONVERTED = "converted"
    TIMED_OUT = "timed_out"
    COMPLETED = "completed"


ACTIVE_STATUSES = (ConversationStatus.PENDING_PAYMENT, ConversationStatus.APPROVED)

VALID_TRANSITIONS = {
    ConversationStatus.PENDING_PAYMENT: [
        ConversationStatus.APPROVED,
        ConversationStatus.TIMED_OUT,
        ConversationStatus.CONVERTED,
        ConversationStatus.COMPLETED,
    ],
    ConversationStatus.APPROVED: [ConversationStatus.CONVERTED, ConversationStatus.COMPLETED],
    # A payment that settles after the wait window still counts as a sale.
    ConversationStatus.TIMED_OUT: [ConversationStatus.APPROVED, ConversationStatus.COMPLETED],
    ConversationStatus.CONVERTED: [ConversationStatus.COMPLETED],
    ConversationStatus.COMPLETED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ConversationStatus, to_status: ConversationStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: ConversationStatus, to_status: ConversationStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: ConversationStatus, to_status: ConversationStatus) -> ConversationStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def sources_for(to_status: ConversationStatus) -> list[ConversationStatus]:
    """Statuses from which ``to_status`` may be reached.

    Used as the ``WHERE status IN (...)`` guard of conditional status updates.
    """
    return [source for source, targets in VALID_TRANSITIONS.items() if to_status in targets]
