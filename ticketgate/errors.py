class TicketGateError(Exception):
    """Base for errors raised inside the gate."""


class InvalidToken(TicketGateError):
    """Token is malformed, undecryptable or its signature does not match.

    ``ticket_number`` is only set when the envelope decrypted but the
    signature check failed. It is for internal audit, never for responses.
    """

    def __init__(self, reason: str = "INVALID_TOKEN", ticket_number: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.ticket_number = ticket_number


class ExpiredToken(TicketGateError):
    pass


class StorageFailure(TicketGateError):
    pass


class InvalidQuantity(TicketGateError):
    pass


class NothingGenerated(TicketGateError):
    pass
