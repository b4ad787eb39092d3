"""Metric definitions for room lifecycle, presence and audio sessions."""

from __future__ import annotations

from .registry import registry


room_lifecycle_total = registry.counter(
    "room_lifecycle_total",
    "Room lifecycle transitions performed by clients.",
    label_names=("action",),
)

presence_feed_bindings = registry.gauge(
    "presence_feed_bindings",
    "Number of live presence feed bindings.",
)

presence_resyncs_total = registry.counter(
    "presence_resyncs_total",
    "Presence resyncs started or dropped by the refresh throttle.",
    label_names=("scope", "outcome"),
)

audio_connection_attempts_total = registry.counter(
    "audio_connection_attempts_total",
    "Audio connection attempts grouped by outcome.",
    label_names=("outcome",),
)

audio_sessions_active = registry.gauge(
    "audio_sessions_active",
    "Audio sessions currently connected.",
)

audio_silence_timeouts_total = registry.counter(
    "audio_silence_timeouts_total",
    "Audio sessions ended by the silence watchdog.",
)

voice_tokens_issued_total = registry.counter(
    "voice_tokens_issued_total",
    "Transport access tokens issued by the token endpoint.",
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Errors encountered while publishing change events.",
    label_names=("table", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of times the change feed transport reconnected to its backend.",
    label_names=("backend", "reason"),
)
