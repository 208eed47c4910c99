from .naming import canonify, join_url
from .retry import cleanup_backoff, schedule_retry

__all__ = [
    "canonify",
    "join_url",
    "cleanup_backoff",
    "schedule_retry",
]
