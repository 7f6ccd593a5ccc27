class DispatcherError(Exception):
    """Base class for all dispatcher errors."""


class StoreUnavailableError(DispatcherError):
    """
    The outbox log, ownership table or cursor store could not be reached.
    Fatal for every worker touching that store until it recovers.
    """

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Store unavailable during '{operation}': {cause}")


class LeaseLostError(DispatcherError):
    """The worker's fencing token is no longer current. Stop signal, never retried."""

    def __init__(self, partition_id: int, instance_id: str, fencing_token: int):
        self.partition_id = partition_id
        self.instance_id = instance_id
        self.fencing_token = fencing_token
        super().__init__(
            f"Instance {instance_id} lost partition {partition_id} (fencing token {fencing_token} is stale)"
        )


class StaleFencingTokenError(DispatcherError):
    """A cursor write carried a lower fencing token than the one already stored."""


class CursorRegressionError(DispatcherError, ValueError):
    """A cursor advance tried to move backwards without being flagged as a replay."""


class CursorEpochMismatchError(DispatcherError):
    """The cursor was reset by a replay after the writer read it."""


class UnscopedReplayError(DispatcherError, ValueError):
    """Replay requested without a consumer or partition scope."""


class InvalidReplayTargetError(DispatcherError, ValueError):
    """Replay target is missing, ambiguous, or would skip undelivered records."""


class UnknownPartitionError(DispatcherError, ValueError):
    """Partition id outside 0..N-1."""


class PermanentDeliveryError(Exception):
    """Raised by a consumer handler to reject a record for good (malformed payload, contract violation)."""
