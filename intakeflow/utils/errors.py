"""
Pipeline error taxonomy.

Adapters raise these; the conductor re-raises them untouched; the webhook worker
maps the category to an ack / nack / dead-letter decision.

    validation  -> not retried, event dropped (payload can never succeed)
    linkage     -> not retried, event dropped (no owning account for the platform id)
    transient   -> retried with backoff up to max_attempts, then dead-lettered
    conflict    -> handled inside the conversation (re-prompt), never reaches the worker
    permanent   -> dead-lettered immediately for manual review
    internal    -> anything else; retried like transient but logged at ERROR
"""


class PipelineError(Exception):
    """Base class for classified pipeline failures."""

    category = "internal"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def summary(self) -> str:
        """Short, payload-free error text safe for audit records and dead letters."""
        text = self.message or self.__class__.__name__
        return f"{self.category}: {text}"[:500]


class PayloadValidationError(PipelineError):
    """Malformed webhook payload, unparseable event or unknown required field."""

    category = "validation"


class TenantNotFoundError(PipelineError):
    """No owning business account is linked to the platform account id."""

    category = "linkage"


class TransientError(PipelineError):
    """Timeouts, rate limits, network failures, malformed provider responses."""

    category = "transient"


class BookingConflictError(PipelineError):
    """The chosen slot was taken between listing and commit."""

    category = "conflict"


class MessagingRejectedError(PipelineError):
    """The send API refused the message (bad recipient, revoked token...)."""

    category = "permanent"


def error_category(error: BaseException) -> str:
    """Return the taxonomy category for any exception."""
    if isinstance(error, PipelineError):
        return error.category
    return "internal"


def error_summary(error: BaseException) -> str:
    """Payload-free summary of an exception for audit and dead-letter storage."""
    if isinstance(error, PipelineError):
        return error.summary()
    return f"internal: {error.__class__.__name__}: {str(error)[:300]}"
