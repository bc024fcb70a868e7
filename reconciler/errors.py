class ReconcilerError(Exception):
    """Base class for every error raised by the engine."""

    status_code = 400

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.message = message
        self.payload = payload


class SignatureVerificationError(ReconcilerError):
    status_code = 400


class MalformedEventError(ReconcilerError):
    status_code = 400


class EventNotFound(ReconcilerError):
    status_code = 404


class SubscriptionNotFound(ReconcilerError):
    status_code = 404


class InvalidStateTransition(ReconcilerError):
    status_code = 409


class CollaboratorError(ReconcilerError):
    """An external collaborator (payment processor, mail relay) failed."""

    status_code = 502

    def __init__(self, message, code=None, payload=None):
        super().__init__(message, payload=payload)
        self.code = code


class TransientCollaboratorError(CollaboratorError):
    """Timeouts, rate limits and connection errors. Always retryable."""

    status_code = 503


class LeaseNotAcquired(ReconcilerError):
    status_code = 409
