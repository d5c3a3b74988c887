"""Prometheus metrics for the matching service.

Defines and exposes operational metrics for monitoring and alerting.
"""

from prometheus_client import Counter, Histogram, Gauge

# Selection rounds
matching_rounds_total = Counter(
    "matching_rounds_total",
    "Total selection rounds run",
    ["outcome", "peak_season"]  # outcome: matched|no_candidates|no_star_agent
)

matches_created_total = Counter(
    "matching_matches_created_total",
    "Total agent matches created",
    ["tier"]  # tier: STAR|BENCH
)

selection_duration_seconds = Histogram(
    "matching_selection_duration_seconds",
    "Time spent on a selection round in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Responses
agent_responses_total = Counter(
    "matching_agent_responses_total",
    "Agent responses applied",
    ["response"]  # response: accepted|declined|expired|removed
)

declines_total = Counter(
    "matching_declines_total",
    "Declines recorded by reason",
    ["reason"]
)

rematches_total = Counter(
    "matching_rematches_total",
    "Rematch rounds initiated",
    ["attempt"]
)

failures_total = Counter(
    "matching_failures_total",
    "Requests that ended FAILED",
    ["reason"]  # reason: no_candidates|max_attempts_reached|no_star_agent
)

anomalies_total = Counter(
    "matching_anomalies_total",
    "Business-rule violations turned into no-ops",
    ["kind"]
)

# Inbound events
inbound_events_total = Counter(
    "matching_inbound_events_total",
    "Inbound events by type and handling result",
    ["event_type", "result"]  # result: applied|duplicate|invalid|not_found|retry
)

# Publishing
outbox_relay_failures_total = Counter(
    "matching_outbox_relay_failures_total",
    "Canonical event publish attempts that failed",
    ["channel"]
)

outbox_pending = Gauge(
    "matching_outbox_pending",
    "Outbox events still waiting for relay after the last relay pass"
)

broadcast_failures_total = Counter(
    "matching_broadcast_failures_total",
    "Best-effort UI broadcasts that failed",
    ["broadcast_type"]
)

# Scheduler
pending_timers = Gauge(
    "matching_pending_timers",
    "Armed match expiry timers in this process"
)

admin_overrides_total = Counter(
    "matching_admin_overrides_total",
    "Admin overrides applied",
    ["action"]
)
