"""Prometheus metrics for the SMS pipeline.

Collectors live on the default registry, which ``GET /metrics`` exposes.
"""

from prometheus_client import Counter, Histogram

SMS_SENT = Counter(
    "sms_sent_total",
    "Total SMS jobs processed, by message type and outcome",
    ["type", "status"],
)

SMS_PROCESSING_DURATION = Histogram(
    "sms_processing_duration_seconds",
    "SMS job processing duration in seconds",
    ["type"],
    buckets=(0.1, 0.5, 1, 2, 5, 10),
)

SMS_QUIET_HOURS_SKIPPED = Counter(
    "sms_quiet_hours_skipped_total",
    "SMS jobs deferred or not enqueued because of quiet hours",
    ["type"],
)

SMS_OPT_OUT = Counter(
    "sms_opt_out_total",
    "Total SMS opt-outs received over the webhook",
)
