from __future__ import annotations

import re
import threading
from collections import defaultdict
from typing import Any, Mapping

from prometheus_client import CollectorRegistry, Gauge

from respond_collector.nodes import Node


MEASUREMENT_GLOBAL = "global"
MEASUREMENT_FIRMWARE = "firmware"
MEASUREMENT_MODEL = "model"
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


def _sanitize_metric_segment(raw: str) -> str:
    return _NON_ALNUM.sub("_", raw.strip().lower()).strip("_")


def flatten_numeric_values(
    payload: Any,
    prefix: str = "",
    output: dict[str, float] | None = None,
) -> dict[str, float]:
    if output is None:
        output = {}

    if isinstance(payload, dict):
        for key, value in payload.items():
            metric_part = _sanitize_metric_segment(str(key))
            if not metric_part:
                continue
            next_prefix = metric_part if not prefix else f"{prefix}_{metric_part}"
            flatten_numeric_values(value, next_prefix, output)
        return output

    if isinstance(payload, bool):
        if prefix:
            output[prefix] = 1.0 if payload else 0.0
        return output

    if isinstance(payload, (int, float)):
        if prefix:
            output[prefix] = float(payload)
        return output

    return output


def _render_tags(tags: Mapping[str, str] | None) -> str:
    if not tags:
        return ""
    return ",".join(f"{key}={tags[key]}" for key in sorted(tags))


class RespondMetricsPublisher:
    """Time-series sink that exposes node and global statistics as Prometheus gauges."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self._lock = threading.Lock()
        self._known_node_fields: dict[str, set[str]] = defaultdict(set)
        self._known_counter_keys: dict[str, set[str]] = defaultdict(set)

        self.node_last_seen_timestamp_seconds = Gauge(
            "respond_node_last_seen_timestamp_seconds",
            "Unix timestamp of the last response received from the node",
            ["node_id"],
            registry=self.registry,
        )
        self.node_statistic = Gauge(
            "respond_node_statistic",
            "Latest numeric statistics value reported by the node",
            ["node_id", "field"],
            registry=self.registry,
        )
        self.measurement_value = Gauge(
            "respond_measurement_value",
            "Latest field value written for a measurement",
            ["measurement", "tags", "field"],
            registry=self.registry,
        )
        self.measurement_timestamp_seconds = Gauge(
            "respond_measurement_timestamp_seconds",
            "Unix timestamp of the latest point written for a measurement",
            ["measurement", "tags"],
            registry=self.registry,
        )
        self.count = Gauge(
            "respond_count",
            "Number of online nodes per key of a counter measurement",
            ["measurement", "key"],
            registry=self.registry,
        )

    def add(self, node_id: str, node: Node) -> None:
        values = flatten_numeric_values(node.statistics or {})
        with self._lock:
            self.node_last_seen_timestamp_seconds.labels(node_id=node_id).set(node.lastseen)
            for field_name, value in values.items():
                self.node_statistic.labels(node_id=node_id, field=field_name).set(value)

            stale_fields = self._known_node_fields[node_id] - set(values)
            for stale_field in stale_fields:
                self.node_statistic.remove(node_id, stale_field)
            self._known_node_fields[node_id] = set(values)

    def add_point(
        self,
        measurement: str,
        tags: Mapping[str, str] | None,
        fields: Mapping[str, float],
        timestamp: float,
    ) -> None:
        rendered_tags = _render_tags(tags)
        with self._lock:
            for field_name, value in fields.items():
                self.measurement_value.labels(
                    measurement=measurement,
                    tags=rendered_tags,
                    field=field_name,
                ).set(value)
            self.measurement_timestamp_seconds.labels(measurement=measurement, tags=rendered_tags).set(timestamp)

    def add_counter_map(self, measurement: str, counts: Mapping[str, int]) -> None:
        with self._lock:
            for key, value in counts.items():
                self.count.labels(measurement=measurement, key=key).set(float(value))

            stale_keys = self._known_counter_keys[measurement] - set(counts)
            for stale_key in stale_keys:
                self.count.remove(measurement, stale_key)
            self._known_counter_keys[measurement] = set(counts)
