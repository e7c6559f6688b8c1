"""Prometheus metrics for the UDP core, polling and cloud sessions."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

marstek_datagram_sent_total: Final = Counter(  # type: ignore[assignment]
    "marstek_datagram_sent_total",
    "Total datagrams sent",
    ["kind", "outcome"],
)

marstek_datagram_recv_total: Final = Counter(  # type: ignore[assignment]
    "marstek_datagram_recv_total",
    "Total datagrams received",
    ["outcome"],
)

marstek_handler_errors_total: Final = Counter(  # type: ignore[assignment]
    "marstek_handler_errors_total",
    "Total exceptions raised by receive handlers",
)

marstek_request_total: Final = Counter(  # type: ignore[assignment]
    "marstek_request_total",
    "Total correlated requests by outcome",
    ["method", "outcome"],
)

marstek_request_latency_seconds: Final = Histogram(  # type: ignore[assignment]
    "marstek_request_latency_seconds",
    "Request to matching reply latency in seconds",
    ["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

marstek_command_attempts_total: Final = Counter(  # type: ignore[assignment]
    "marstek_command_attempts_total",
    "Total configuration command attempts",
    ["outcome"],
)

marstek_poll_tick_total: Final = Counter(  # type: ignore[assignment]
    "marstek_poll_tick_total",
    "Total poll ticks by method",
    ["method"],
)

marstek_poll_skipped_total: Final = Counter(  # type: ignore[assignment]
    "marstek_poll_skipped_total",
    "Total per-device poll sends skipped",
    ["reason"],
)

marstek_poll_interval_seconds: Final = Gauge(  # type: ignore[assignment]
    "marstek_poll_interval_seconds",
    "Current effective poll interval in seconds",
)

marstek_discovery_devices: Final = Gauge(  # type: ignore[assignment]
    "marstek_discovery_devices",
    "Devices found by the last discovery run",
)

marstek_cloud_request_total: Final = Counter(  # type: ignore[assignment]
    "marstek_cloud_request_total",
    "Total cloud HTTP calls",
    ["endpoint", "outcome"],
)

marstek_cloud_cache_hits_total: Final = Counter(  # type: ignore[assignment]
    "marstek_cloud_cache_hits_total",
    "Total cloud status reads served from cache",
)

marstek_device_online: Final = Gauge(  # type: ignore[assignment]
    "marstek_device_online",
    "1 when the device answered recently",
    ["device_id"],
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_datagram_sent(kind: str, outcome: str) -> None:
    """Record an outbound datagram (kind: unicast/broadcast)."""
    marstek_datagram_sent_total.labels(kind=kind, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_datagram_recv(outcome: str) -> None:
    """Record an inbound datagram (outcome: ok/self_echo/malformed)."""
    marstek_datagram_recv_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_handler_error() -> None:
    marstek_handler_errors_total.inc()  # type: ignore[no-untyped-call]


def record_request(method: str, outcome: str) -> None:
    """Record the outcome of a correlated request."""
    marstek_request_total.labels(method=method, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_request_latency(method: str, latency_seconds: float) -> None:
    marstek_request_latency_seconds.labels(method=method).observe(latency_seconds)  # type: ignore[no-untyped-call]


def record_command_attempt(outcome: str) -> None:
    """Record one configuration attempt (ok/rejected/timeout/protocol/transport)."""
    marstek_command_attempts_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_poll_tick(method: str) -> None:
    marstek_poll_tick_total.labels(method=method).inc()  # type: ignore[no-untyped-call]


def record_poll_skipped(reason: str) -> None:
    marstek_poll_skipped_total.labels(reason=reason).inc()  # type: ignore[no-untyped-call]


def record_poll_interval(seconds: float) -> None:
    marstek_poll_interval_seconds.set(seconds)  # type: ignore[no-untyped-call]


def record_discovery_result(count: int) -> None:
    marstek_discovery_devices.set(count)  # type: ignore[no-untyped-call]


def record_cloud_request(endpoint: str, outcome: str) -> None:
    """Record a cloud HTTP call (endpoint: login/status)."""
    marstek_cloud_request_total.labels(endpoint=endpoint, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_cloud_cache_hit() -> None:
    marstek_cloud_cache_hits_total.inc()  # type: ignore[no-untyped-call]


def record_device_online(device_id: str, online: bool) -> None:
    marstek_device_online.labels(device_id=device_id).set(1 if online else 0)  # type: ignore[no-untyped-call]
