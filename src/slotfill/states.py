from enum import Enum

WORKING_STATUSES = {"extracting", "validating"}
SETTLED_STATUSES = {"accepted", "rejected", "deferred"}
TERMINAL_STATUSES = {"complete", "escalated"}


class StepStatus(Enum):
    AWAITING_INPUT = "awaiting_input"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    COMPLETE = "complete"
    ESCALATED = "escalated"

    @property
    def is_working(self) -> bool:
        return self.value in WORKING_STATUSES

    @property
    def is_settled(self) -> bool:
        return self.value in SETTLED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATUSES
