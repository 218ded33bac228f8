from .reconcile import ReconcileOptions, ReconcilePolicy, channel_version, reconcile, release_assets
from .retry import RetryPolicy, with_retry

__all__ = [
    "ReconcileOptions",
    "ReconcilePolicy",
    "RetryPolicy",
    "channel_version",
    "reconcile",
    "release_assets",
    "with_retry",
]
