"""
Exceptions raised by the delivery engine.

Store failures on the primary path and caller errors are raised;
advisory bookkeeping never raises (see dedup_ledger).
"""


class RelayError(Exception):
    """Base class for all delivery engine errors."""


class StoreError(RelayError):
    """The key-value store could not complete a read or write."""

    def __init__(self, operation: str, key: str, cause: Exception | None = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Store {operation} failed for {key}{detail}")


class DeliveryNotFoundError(RelayError):
    """No delivery status exists for the job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Delivery status not found: {job_id}")


class DeliveryStateError(RelayError):
    """The delivery is in a state that does not allow the operation."""

    def __init__(self, job_id: str, state: str, operation: str):
        self.job_id = job_id
        self.state = state
        super().__init__(f"Cannot {operation} delivery {job_id} in state {state}")


class InvalidPayloadError(RelayError):
    """The inbound event lacks the fields needed to identify it."""
