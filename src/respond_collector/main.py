from __future__ import annotations

import argparse
import logging
import os
import time
from dataclasses import dataclass
from typing import Sequence

from prometheus_client import start_http_server

from respond_collector.collector import Collector
from respond_collector.exporter import RespondMetricsPublisher
from respond_collector.nodes import Nodes


LOGGER = logging.getLogger("respond_collector")


@dataclass(frozen=True)
class AppConfig:
    iface: str
    multicast_address: str | None
    interval_seconds: float
    offline_after_seconds: float
    metrics_enabled: bool
    listen_address: str
    listen_port: int
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collect respondd statistics from mesh nodes")
    parser.add_argument(
        "--iface",
        default=os.getenv("RESPOND_IFACE", ""),
        help="network interface the multicast request is sent on",
    )
    parser.add_argument(
        "--multicast-address",
        default=os.getenv("RESPOND_MULTICAST_ADDRESS"),
        help="request target overriding the default multicast group, for example: 10.0.0.1:1001",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=_float_env("RESPOND_INTERVAL_SECONDS", 15.0),
        help="interval between requests",
    )
    parser.add_argument(
        "--offline-after-seconds",
        type=float,
        default=_float_env("RESPOND_OFFLINE_AFTER_SECONDS", 600.0),
        help="nodes not heard from for this long are left out of global statistics",
    )
    parser.add_argument(
        "--metrics",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("RESPOND_METRICS", True),
        help="store statistics and serve them on the /metrics endpoint",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("RESPOND_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("RESPOND_LISTEN_PORT", 9109),
        help="http bind port for /metrics endpoint",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("RESPOND_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(argv: Sequence[str] | None = None) -> AppConfig:
    args = build_arg_parser().parse_args(argv)
    return AppConfig(
        iface=args.iface,
        multicast_address=args.multicast_address,
        interval_seconds=args.interval_seconds,
        offline_after_seconds=args.offline_after_seconds,
        metrics_enabled=bool(args.metrics),
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        log_level=args.log_level,
    )


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    nodes = Nodes(offline_after_seconds=config.offline_after_seconds)
    metrics: RespondMetricsPublisher | None = None
    if config.metrics_enabled:
        metrics = RespondMetricsPublisher()
        start_http_server(
            port=config.listen_port,
            addr=config.listen_address,
            registry=metrics.registry,
        )
        LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    collector = Collector(nodes, config.iface, metrics, multicast_address=config.multicast_address)
    try:
        collector.start(config.interval_seconds)
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        collector.close()


if __name__ == "__main__":
    main()
