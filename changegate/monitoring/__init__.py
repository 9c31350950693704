"""
Monitoring utilities for changegate.
"""

from .metrics import (
    start_metrics_server,
    track_apply_outcome,
    track_change_submitted,
    track_expired,
    track_rest_error,
    track_rest_latency,
    track_rest_request,
    track_rollback_outcome,
    track_vote
)

__all__ = [
    "start_metrics_server",
    "track_apply_outcome",
    "track_change_submitted",
    "track_expired",
    "track_rest_error",
    "track_rest_latency",
    "track_rest_request",
    "track_rollback_outcome",
    "track_vote"
]
