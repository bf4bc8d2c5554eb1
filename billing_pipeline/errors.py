"""Exception types shared by the gateway and the billing worker."""


class BillingPipelineError(Exception):
    """Base class for every error raised by this package."""


# ---------------- Broker ----------------
class BrokerUnavailable(BillingPipelineError):
    """The broker could not be reached within the connection retry budget."""


class QueueConfigurationConflict(BillingPipelineError):
    """The queue already exists with properties that differ from ours."""


class PublishFailed(BillingPipelineError):
    """The message was not confirmed by the broker; assume it was not queued."""


class PublishTimeout(PublishFailed):
    """The publish did not complete before the request deadline."""


# ---------------- Consumer / store ----------------
class StoreUnavailable(BillingPipelineError):
    """Transient storage failure; the message should be redelivered."""


class OrderRejected(BillingPipelineError):
    """The store refused the record itself; retrying cannot help."""
