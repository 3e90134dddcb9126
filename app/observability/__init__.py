"""
============================================================================
Fiat Bridge v1.0.0
Observability Module - Prometheus Metrics & Operator Alerts
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: None
Side Effects: Exposes Prometheus metrics, posts Discord webhooks

============================================================================
"""

from app.observability.metrics import (
    CONVERSIONS_INITIATED,
    CONVERSIONS_FINISHED,
    CONVERSION_RETRIES,
    EXECUTION_LATENCY,
    SLIPPAGE_HISTOGRAM,
    QUEUE_DEPTH,
    VENUE_FAILURE_STREAK,
    record_conversion_initiated,
    record_conversion_finished,
    record_retry_scheduled,
    record_execution_latency,
    record_slippage,
    update_queue_depth,
    update_venue_failure_streak,
)

from app.observability.discord_notifier import (
    DiscordNotifier,
    AlertLevel,
    NotificationResult,
)

__all__ = [
    # Conversion metrics
    "CONVERSIONS_INITIATED",
    "CONVERSIONS_FINISHED",
    "CONVERSION_RETRIES",
    "EXECUTION_LATENCY",
    "SLIPPAGE_HISTOGRAM",
    "QUEUE_DEPTH",
    "VENUE_FAILURE_STREAK",
    "record_conversion_initiated",
    "record_conversion_finished",
    "record_retry_scheduled",
    "record_execution_latency",
    "record_slippage",
    "update_queue_depth",
    "update_venue_failure_streak",
    # Alerts
    "DiscordNotifier",
    "AlertLevel",
    "NotificationResult",
]
