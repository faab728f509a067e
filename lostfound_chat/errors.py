"""
Error taxonomy for the messaging core.

Duplicate or out-of-order input is never an error. Only collaborator I/O
(store, bus, resolvers) and boundary validation raise.
"""


class ChatError(Exception):
    """Base class for messaging errors."""


class TransportError(ChatError):
    """Store or network failure during fetch, insert, publish or lookup."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        message = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class MessageValidationError(ChatError):
    """Message rejected at the boundary (self-message, empty body, missing ids)."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
