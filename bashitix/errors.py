"""Domain errors for the ticketing core.

Every error carries the HTTP status it surfaces as and a user-safe message.
The server turns them into ``{"error": <message>}`` bodies; nothing else
about the failure leaves the process.
"""


class TicketingError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TicketingError):
    status_code = 400
    default_message = "Invalid input"


class ConflictError(TicketingError):
    status_code = 409
    default_message = "Conflict"


class AlreadyHasTicket(ConflictError):
    default_message = "You already have a ticket for this event"


class AlreadyUsed(ConflictError):
    default_message = "Ticket already used"


class Unauthorized(TicketingError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(TicketingError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(TicketingError):
    status_code = 404
    default_message = "Not found"


class CapacityExceeded(TicketingError):
    status_code = 400
    default_message = "Event is at capacity"


class EventNotAvailable(TicketingError):
    status_code = 400
    default_message = "Event is not available"


class TooManyRequests(TicketingError):
    status_code = 429
    default_message = "Too many requests. Try again later."


class GatewayError(TicketingError):
    status_code = 502
    default_message = "Payment failed"


class InvalidSignature(TicketingError):
    status_code = 401
    default_message = "Invalid signature"
