"""Metrics module."""

from .registry import (
    record_cloud_cache_hit,
    record_cloud_request,
    record_command_attempt,
    record_datagram_recv,
    record_datagram_sent,
    record_device_online,
    record_discovery_result,
    record_handler_error,
    record_poll_interval,
    record_poll_skipped,
    record_poll_tick,
    record_request,
    record_request_latency,
    start_metrics_server,
)

__all__ = [
    "record_cloud_cache_hit",
    "record_cloud_request",
    "record_command_attempt",
    "record_datagram_recv",
    "record_datagram_sent",
    "record_device_online",
    "record_discovery_result",
    "record_handler_error",
    "record_poll_interval",
    "record_poll_skipped",
    "record_poll_tick",
    "record_request",
    "record_request_latency",
    "start_metrics_server",
]
