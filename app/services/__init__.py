"""Business logic services for the tracing and analytics engine."""

# Service modules are imported individually where needed
# to avoid circular imports

__all__ = [
    "tracing",
    "streaming",
    "observability",
    "metrics",
    "analytics",
    "evaluators",
]
