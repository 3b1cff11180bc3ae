"""
Billing error taxonomy.

Handlers raise these; the engine records the message on the event row and
re-raises so the webhook route answers non-2xx and the provider redelivers.
"""


class BillingError(Exception):
    retriable = True

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.context = context


class DuplicateEvent(BillingError):
    """Not a failure: the event id was already processed successfully."""
    retriable = False


class MalformedEvent(BillingError):
    """Event lacks id, type or data.object; redelivery cannot fix it."""
    retriable = False


class EventNotFound(BillingError):
    """Replay requested for an event id that was never recorded."""
    retriable = False


class UserNotResolvable(BillingError):
    """No strategy mapped the event to an internal user (linkage may appear later)."""


class SubscriptionNotFound(BillingError):
    """The event implies an update to a subscription record that must already exist."""


class UpstreamLookupFailure(BillingError):
    """A provider API call failed after transport-level retries."""


class PersistenceFailure(BillingError):
    """A database write failed; the event is re-deliverable."""
