from dataclasses import dataclass, field


class NotFound(Exception):
    def __init__(self, what: str):
        super().__init__(f"{what} not found")
        self.what = what


class EventValidationError(Exception):
    """An update or create request touched a field it may not, or with a bad value."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidTransition(Exception):
    pass


class AlreadyIssued(Exception):
    pass


class TicketIdExhausted(Exception):
    pass


# Business rejections: expected outcomes, returned to the caller, never raised.
REGISTRATION_CLOSED = "REGISTRATION_CLOSED"
DEADLINE_PASSED = "DEADLINE_PASSED"
NOT_ELIGIBLE = "NOT_ELIGIBLE"
ALREADY_REGISTERED = "ALREADY_REGISTERED"
CAPACITY_FULL = "CAPACITY_FULL"
INVALID_VARIANT = "INVALID_VARIANT"
PURCHASE_LIMIT_EXCEEDED = "PURCHASE_LIMIT_EXCEEDED"
OUT_OF_STOCK = "OUT_OF_STOCK"


@dataclass
class Rejection:
    reason: str
    message: str
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"status": "REJECTED", "reason_code": self.reason, "message": self.message, **self.context}
