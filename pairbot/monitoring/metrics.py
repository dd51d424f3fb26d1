"""
Prometheus metrics for the pair engine.

Organized into: entries, lifecycle, reconciliation, operational.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class EngineMetrics:
    """Counters and gauges for pair lifecycle observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Entry Metrics ===
        self.signals_received = Counter(
            'signals_received_total',
            'Signals received',
            labelnames=['symbol', 'kind'],
            registry=reg
        )
        self.entry_rejections = Counter(
            'entry_rejections_total',
            'Entry signals rejected',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.pairs_opened = Counter(
            'pairs_opened_total',
            'Pairs whose LEG1 was placed',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.leg2_adopted = Counter(
            'leg2_adopted_total',
            'LEG2 positions adopted from broker mirrors',
            labelnames=['symbol'],
            registry=reg
        )
        self.leg2_fallback = Counter(
            'leg2_fallback_total',
            'Explicit LEG2 placements',
            labelnames=['symbol', 'result'],
            registry=reg
        )

        # === Lifecycle Metrics ===
        self.pairs_closed = Counter(
            'pairs_closed_total',
            'Pairs finalized',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.partials_taken = Counter(
            'partials_taken_total',
            'PARTIAL legs closed at the partial target',
            labelnames=['symbol'],
            registry=reg
        )
        self.open_pairs = Gauge(
            'open_pairs',
            'Pairs currently in the store',
            labelnames=['symbol'],
            registry=reg
        )
        self.entry_lock_held = Gauge(
            'entry_lock_held',
            'Entry lock held (1) or free (0)',
            labelnames=['symbol'],
            registry=reg
        )

        # === Reconciliation Metrics ===
        self.external_closed = Counter(
            'external_positions_closed_total',
            'Unowned broker positions closed by the sweep',
            labelnames=['symbol'],
            registry=reg
        )
        self.reconcile_runs = Counter(
            'reconcile_runs_total',
            'Reconciler passes',
            labelnames=['symbol', 'result'],
            registry=reg
        )
        self.reconcile_duration_ms = Histogram(
            'reconcile_duration_ms',
            'Reconciler pass duration (milliseconds)',
            labelnames=['symbol'],
            buckets=[5, 20, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )

        # === Operational Metrics ===
        self.ticks_processed = Counter(
            'ticks_processed_total',
            'Ticks evaluated',
            labelnames=['symbol'],
            registry=reg
        )
        self.market_frozen = Gauge(
            'market_frozen',
            'Tick logic suspended on a stagnant price (1) or running (0)',
            labelnames=['symbol'],
            registry=reg
        )
        self.loop_errors = Counter(
            'loop_errors_total',
            'Unhandled errors caught by scheduler loops',
            labelnames=['symbol', 'loop'],
            registry=reg
        )


def start_metrics_server(metrics: EngineMetrics, port: int) -> bool:
    """Expose metrics.registry on /metrics. Port 0 disables the server."""
    if not port:
        return False
    start_http_server(port, registry=metrics.registry)
    return True
