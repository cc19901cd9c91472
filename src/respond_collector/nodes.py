from __future__ import annotations

import threading
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from respond_collector.response import ResponseData


@dataclass
class Node:
    node_id: str
    firstseen: float
    lastseen: float
    nodeinfo: dict[str, Any] | None = None
    statistics: dict[str, Any] | None = None
    neighbours: dict[str, Any] | None = None


class Nodes:
    """In-memory registry of mesh nodes keyed by node id.

    Safe for one writer and concurrent readers; callers always receive copies.
    """

    def __init__(self, offline_after_seconds: float = 600.0, clock: Callable[[], float] = time.time) -> None:
        self.offline_after_seconds = offline_after_seconds
        self._clock = clock
        self._nodes: dict[str, Node] = {}
        self._lock = threading.Lock()

    def update(self, node_id: str, data: ResponseData) -> Node:
        now = self._clock()
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                node = Node(node_id=node_id, firstseen=now, lastseen=now)
                self._nodes[node_id] = node
            node.lastseen = now
            if data.nodeinfo is not None:
                node.nodeinfo = data.nodeinfo
            if data.statistics is not None:
                node.statistics = data.statistics
            if data.neighbours is not None:
                node.neighbours = data.neighbours
            return replace(node)

    def get(self, node_id: str) -> Node | None:
        with self._lock:
            node = self._nodes.get(node_id)
            return replace(node) if node is not None else None

    def snapshot(self) -> list[Node]:
        with self._lock:
            return [replace(node) for node in self._nodes.values()]

    def online_nodes(self) -> list[Node]:
        cutoff = self._clock() - self.offline_after_seconds
        return [node for node in self.snapshot() if node.lastseen >= cutoff]

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)


def _lookup(section: dict[str, Any] | None, *path: str) -> Any:
    value: Any = section
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


@dataclass
class GlobalStats:
    nodes: int = 0
    clients: int = 0
    clients_wifi: int = 0
    clients_wifi24: int = 0
    clients_wifi5: int = 0
    firmwares: Counter[str] = field(default_factory=Counter)
    models: Counter[str] = field(default_factory=Counter)

    @classmethod
    def from_nodes(cls, nodes: Nodes) -> GlobalStats:
        stats = cls()
        for node in nodes.online_nodes():
            stats.nodes += 1
            clients = _lookup(node.statistics, "clients")
            stats.clients += _as_count(_lookup(clients, "total"))
            stats.clients_wifi += _as_count(_lookup(clients, "wifi"))
            stats.clients_wifi24 += _as_count(_lookup(clients, "wifi24"))
            stats.clients_wifi5 += _as_count(_lookup(clients, "wifi5"))

            release = _lookup(node.nodeinfo, "software", "firmware", "release")
            if isinstance(release, str) and release:
                stats.firmwares[release] += 1
            model = _lookup(node.nodeinfo, "hardware", "model")
            if isinstance(model, str) and model:
                stats.models[model] += 1
        return stats

    def fields(self) -> dict[str, float]:
        return {
            "nodes": float(self.nodes),
            "clients.total": float(self.clients),
            "clients.wifi": float(self.clients_wifi),
            "clients.wifi24": float(self.clients_wifi24),
            "clients.wifi5": float(self.clients_wifi5),
        }
