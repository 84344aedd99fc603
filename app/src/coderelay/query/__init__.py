"""Query execution — cancellation, best-effort recording, the executor."""

from coderelay.query.cancellation import CancellationToken, CancelReason
from coderelay.query.executor import QueryError, QueryExecutor, QueryOutcome, QueryRequest
from coderelay.query.recorder import MessageRecorder

__all__ = [
    "CancellationToken",
    "CancelReason",
    "MessageRecorder",
    "QueryError",
    "QueryExecutor",
    "QueryOutcome",
    "QueryRequest",
]
