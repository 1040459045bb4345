"""Exceptions raised by the tracing and analytics services."""


class TracingError(Exception):
    """Base class for tracing failures."""


class TracePersistenceError(TracingError):
    """A durable trace write or read failed.

    Fatal for the request that triggered it: cost and usage accounting
    depend on the trace row existing.
    """


class TraceNotFoundError(TracingError):
    """No trace row exists for the given trace id."""

    def __init__(self, trace_id: str):
        self.trace_id = trace_id
        super().__init__(f"Trace {trace_id} not found")


class AnalyticsQueryError(TracingError):
    """An analytics or aggregation read query failed as a whole."""
