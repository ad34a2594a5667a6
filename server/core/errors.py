"""Typed errors shared by the messaging services, the REST routes and the socket protocol."""


class ChatError(Exception):
    """Base error so callers can distinguish transient from permanent failures."""

    code = "E_INTERNAL"
    status_code = 500

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class NotFoundError(ChatError):
    """Conversation or message does not exist."""

    code = "E_NOT_FOUND"
    status_code = 404


class InvalidArgumentError(ChatError):
    """Missing content, bad attachment, or sender is not a participant."""

    code = "E_INVALID_ARGUMENT"
    status_code = 400


class PersistenceError(ChatError):
    """A store or blob write failed. The message is not considered sent."""

    code = "E_PERSISTENCE"
    status_code = 503

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message, retryable=retryable)


class TransientDeliveryError(ChatError):
    """A realtime push could not reach its target. Never surfaced to API callers."""

    code = "E_DELIVERY"
    status_code = 503

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message, retryable=retryable)


class DuplicateSendError(PersistenceError):
    """The sender already stored a message under this correlation token."""

    code = "E_DUPLICATE"
    status_code = 409

    def __init__(self, message: str, *, retryable: bool = False):
        super().__init__(message, retryable=retryable)
