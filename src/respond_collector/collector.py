from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Mapping, Protocol

from respond_collector.connection import (
    MAX_DATAGRAM_SIZE,
    REQUEST_PAYLOAD,
    RequestConnection,
    SocketAddress,
    format_address,
    multicast_target,
)
from respond_collector.exporter import MEASUREMENT_FIRMWARE, MEASUREMENT_GLOBAL, MEASUREMENT_MODEL
from respond_collector.nodes import GlobalStats, Node, Nodes
from respond_collector.response import (
    DecodeError,
    Response,
    ResponseData,
    decode_response,
    extract_node_id,
    is_valid_node_id,
)


QUEUE_SIZE = 400
GLOBAL_STATS_INTERVAL_SECONDS = 60.0
LOGGER = logging.getLogger("respond_collector.collector")
_QUEUE_CLOSED = object()


class StatisticsSink(Protocol):
    def add(self, node_id: str, node: Node) -> None: ...

    def add_point(
        self,
        measurement: str,
        tags: Mapping[str, str] | None,
        fields: Mapping[str, float],
        timestamp: float,
    ) -> None: ...

    def add_counter_map(self, measurement: str, counts: Mapping[str, int]) -> None: ...


class Collector:
    """Requests, receives and stores the status responses of mesh nodes.

    Construction opens the socket and starts the receiver and parser threads,
    plus the global stats worker when a sink is given. ``start`` begins the
    periodic requests and ``close`` stops everything; both may only be called
    once.

    The queue between receiver and parser is bounded at ``QUEUE_SIZE``. When it
    is full the receiver blocks and further datagrams pile up in the kernel
    receive buffer until the kernel drops them.

    A receive error other than the one caused by ``close`` ends the receiver
    for good: requests keep going out but no response is read anymore.
    """

    def __init__(
        self,
        nodes: Nodes,
        iface: str = "",
        sink: StatisticsSink | None = None,
        *,
        connection: RequestConnection | None = None,
        multicast_address: str | None = None,
        queue_size: int = QUEUE_SIZE,
    ) -> None:
        self._nodes = nodes
        self._sink = sink
        self._connection = connection if connection is not None else RequestConnection(iface)
        self._multicast_address = self._connection.resolve(multicast_address or multicast_target(iface))
        self._queue: queue.Queue[Response | object] = queue.Queue(maxsize=queue_size)
        self._stop = threading.Event()
        self._interval_seconds: float | None = None
        self._closed = False

        self._receiver_thread = threading.Thread(target=self._receiver, name="respond-receiver", daemon=True)
        self._parser_thread = threading.Thread(target=self._parser, name="respond-parser", daemon=True)
        self._receiver_thread.start()
        self._parser_thread.start()

        self._global_stats_thread: threading.Thread | None = None
        if self._sink is not None:
            self._global_stats_thread = threading.Thread(
                target=self._global_stats_worker,
                name="respond-global-stats",
                daemon=True,
            )
            self._global_stats_thread.start()

    def start(self, interval_seconds: float) -> None:
        if self._interval_seconds is not None:
            raise RuntimeError("collector already started")
        if interval_seconds <= 0:
            raise ValueError(f"invalid collector interval: {interval_seconds}")
        self._interval_seconds = interval_seconds

        self._sender_thread = threading.Thread(target=self._sender, name="respond-sender", daemon=True)
        self._sender_thread.start()
        LOGGER.info(
            "requesting node data from %s every %.1fs",
            format_address(self._multicast_address),
            interval_seconds,
        )

    def close(self) -> None:
        if self._closed:
            raise RuntimeError("collector already closed")
        self._closed = True
        self._stop.set()
        self._connection.close()
        # the receiver pushes nothing after it exits, so the sentinel is the last entry
        self._receiver_thread.join()
        self._queue.put(_QUEUE_CLOSED)
        LOGGER.info("collector closed")

    def send_packet(self, address: str | SocketAddress) -> None:
        """Send one request to a unicast or multicast address."""
        self._connection.send(REQUEST_PAYLOAD, address)

    def _send_once(self) -> None:
        self.send_packet(self._multicast_address)

    def _sender(self) -> None:
        self._send_once()
        while not self._stop.wait(self._interval_seconds):
            self._send_once()

    def _receiver(self) -> None:
        buffer = bytearray(MAX_DATAGRAM_SIZE)
        while not self._stop.is_set():
            try:
                size, address = self._connection.receive_into(buffer)
            except TimeoutError:
                continue
            except OSError as error:
                if not self._stop.is_set():
                    LOGGER.error("receiving responses failed, receiver stopped: %s", error)
                return
            if self._stop.is_set():
                return
            self._queue.put(Response(address=address, raw=bytes(buffer[:size]), received_at=time.time()))

    def _parser(self) -> None:
        while True:
            response = self._queue.get()
            if response is _QUEUE_CLOSED:
                return
            try:
                data = decode_response(response)
            except DecodeError as error:
                LOGGER.warning("unable to decode response: %s\n%r", error, error.raw)
                continue
            try:
                self._save_response(response.address, data)
            except Exception:
                LOGGER.exception("storing response from %s failed", format_address(response.address))

    def _save_response(self, address: SocketAddress, data: ResponseData) -> None:
        node_id = extract_node_id(data)
        if not is_valid_node_id(node_id):
            LOGGER.warning("invalid node id %r from %s", node_id, format_address(address))
            return

        node = self._nodes.update(node_id, data)
        LOGGER.debug("updated node %s from %s", node_id, format_address(address))

        if self._sink is not None and node.statistics is not None:
            self._sink.add(node_id, node)

    def _global_stats_worker(self) -> None:
        while not self._stop.wait(GLOBAL_STATS_INTERVAL_SECONDS):
            try:
                self._save_global_stats()
            except Exception:
                LOGGER.exception("saving global stats failed")

    def _save_global_stats(self) -> None:
        stats = GlobalStats.from_nodes(self._nodes)
        self._sink.add_point(MEASUREMENT_GLOBAL, None, stats.fields(), time.time())
        self._sink.add_counter_map(MEASUREMENT_FIRMWARE, dict(stats.firmwares))
        self._sink.add_counter_map(MEASUREMENT_MODEL, dict(stats.models))
