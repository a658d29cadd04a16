"""Metric definitions for room presence and reconnection."""

from __future__ import annotations

from .registry import registry


room_joins_total = registry.counter(
    "huddle_room_joins_total",
    "Join requests handled by the room client.",
    label_names=("outcome",),
)

room_leaves_total = registry.counter(
    "huddle_room_leaves_total",
    "Completed room leaves grouped by cause.",
    label_names=("reason",),
)

reconnect_attempts_total = registry.counter(
    "huddle_reconnect_attempts_total",
    "Automatic reconnection attempts and their outcome.",
    label_names=("outcome",),
)

kicks_detected_total = registry.counter(
    "huddle_kicks_detected_total",
    "Times the own member record disappeared without an intentional leave.",
)

signals_consumed_total = registry.counter(
    "huddle_signals_consumed_total",
    "Signal envelopes addressed to this client, by handling outcome.",
    label_names=("outcome",),
)

directory_loads_total = registry.counter(
    "huddle_directory_loads_total",
    "Rooms directory reads by source (cache, store, shared).",
    label_names=("source",),
)

presence_store_errors_total = registry.counter(
    "huddle_presence_store_errors_total",
    "Failed presence store operations.",
    label_names=("backend", "operation", "kind"),
)

presence_store_restarts_total = registry.counter(
    "huddle_presence_store_restarts_total",
    "Presence store backend recoveries after connection loss.",
    label_names=("backend", "reason"),
)

presence_subscriptions = registry.gauge(
    "huddle_presence_subscriptions",
    "Active presence store subscriptions.",
    label_names=("kind",),
)

room_members = registry.gauge(
    "huddle_room_members",
    "Member count of the joined room as of the last settled update.",
)
