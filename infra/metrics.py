"""Prometheus-backed metrics hooks for exchange access and position reconciliation."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose exchange and reconciliation stats via Prometheus.

    Each instance owns its CollectorRegistry, so several recorders (e.g. one
    per test) never collide on metric names. A disabled recorder keeps the
    last-seen values for inspection but registers nothing.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry if registry is not None else CollectorRegistry()

        self._last_api_event: Optional[Dict[str, str]] = None
        self._last_used_weight: Optional[int] = None
        self._last_clock_offset_ms: Optional[int] = None
        self._realized_pnl = 0.0

        if not self._enabled:
            self._requests_counter = None
            self._latency_summary = None
            self._used_weight_gauge = None
            self._rate_limited_counter = None
            self._clock_offset_gauge = None
            self._tracked_gauge = None
            self._closed_counter = None
            self._realized_pnl_gauge = None
            self._reconcile_errors_counter = None
            return

        self._requests_counter = Counter(
            "aster_requests_total",
            "Exchange requests by endpoint and outcome",
            labelnames=("endpoint", "outcome"),
            registry=self.registry,
        )
        self._latency_summary = Summary(
            "aster_request_latency_seconds",
            "Latency of exchange API calls",
            labelnames=("endpoint",),
            registry=self.registry,
        )
        self._used_weight_gauge = Gauge(
            "aster_used_weight",
            "Last reported request weight used in the current minute",
            registry=self.registry,
        )
        self._rate_limited_counter = Counter(
            "aster_rate_limited_total",
            "Number of rate-limit responses from the exchange",
            registry=self.registry,
        )
        self._clock_offset_gauge = Gauge(
            "aster_clock_offset_ms",
            "Estimated exchange clock offset in milliseconds",
            registry=self.registry,
        )
        self._tracked_gauge = Gauge(
            "aster_tracked_positions",
            "Number of positions currently tracked by the reconciler",
            registry=self.registry,
        )
        self._closed_counter = Counter(
            "aster_positions_closed_total",
            "Closed positions by outcome",
            labelnames=("outcome",),  # outcome: "win", "loss"
            registry=self.registry,
        )
        self._realized_pnl_gauge = Gauge(
            "aster_realized_pnl_usdt",
            "Cumulative realized P&L since process start (USDT)",
            registry=self.registry,
        )
        self._reconcile_errors_counter = Counter(
            "aster_reconcile_errors_total",
            "Per-symbol reconciliation failures",
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_api_call(self, endpoint: str, duration: float, outcome: str) -> None:
        self._last_api_event = {"endpoint": endpoint, "outcome": outcome}
        if self._enabled:
            self._requests_counter.labels(endpoint=endpoint, outcome=outcome).inc()
            self._latency_summary.labels(endpoint=endpoint).observe(max(duration, 0.0))

    def record_used_weight(self, used_weight: Optional[int]) -> None:
        if used_weight is None:
            return
        self._last_used_weight = used_weight
        if self._enabled:
            self._used_weight_gauge.set(used_weight)

    def record_rate_limited(self) -> None:
        if self._enabled:
            self._rate_limited_counter.inc()

    def record_clock_offset(self, offset_ms: int) -> None:
        self._last_clock_offset_ms = offset_ms
        if self._enabled:
            self._clock_offset_gauge.set(offset_ms)

    def record_tracked_positions(self, count: int) -> None:
        if self._enabled:
            self._tracked_gauge.set(count)

    def record_position_closed(self, pnl: float) -> None:
        self._realized_pnl += pnl
        if self._enabled:
            self._closed_counter.labels(outcome="win" if pnl >= 0 else "loss").inc()
            self._realized_pnl_gauge.set(self._realized_pnl)

    def record_reconcile_error(self) -> None:
        if self._enabled:
            self._reconcile_errors_counter.inc()

    @property
    def last_api_event(self) -> Optional[Dict[str, str]]:
        return self._last_api_event

    @property
    def last_used_weight(self) -> Optional[int]:
        return self._last_used_weight

    @property
    def last_clock_offset_ms(self) -> Optional[int]:
        return self._last_clock_offset_ms

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl


__all__ = ["MetricsRecorder"]
