"""Error taxonomy of the queue engine."""


class QueueError(Exception):
    """Base class for every error raised by the queue engine."""


class ConfigurationError(QueueError, ValueError):
    """Missing or invalid queue policy. Fatal for the current run."""


class CapacityExhausted(QueueError):
    """No working day inside the scheduling horizon has capacity left."""


class InvalidTransition(QueueError):
    """A status change that the state machine does not allow."""

    def __init__(self, item_id, current, target, reason=None):
        self.item_id = item_id
        self.current = current
        self.target = target
        message = f"Item {item_id}: {current} -> {target} is not allowed"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class SendFailure(QueueError):
    """The outbound channel did not accept the message. Transient, retried."""


class RateLimited(SendFailure):
    """The outbound channel asked us to slow down."""

    def __init__(self, message, retry_after=60):
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceFailure(QueueError):
    """The persistence collaborator could not complete a call. Transient."""


class DuplicateItem(QueueError):
    """The subject already has an active queue item."""

    def __init__(self, subject_id):
        super().__init__(f"Subject {subject_id} already has an active queue item")
        self.subject_id = subject_id
