"""
Prometheus metrics for the engine.

Organized into: loops, liquidity actions, orders, positions, remote calls.
Each instance owns its registry so several engines (or tests) never clash
on metric names.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class EngineMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Loops ===
        self.loop_cycles = Counter(
            'lp_loop_cycles_total',
            'Completed periodic loop cycles',
            labelnames=['loop'],
            registry=reg
        )
        self.loop_errors = Counter(
            'lp_loop_errors_total',
            'Loop cycles that raised or were skipped',
            labelnames=['loop', 'kind'],
            registry=reg
        )
        self.loop_duration_sec = Histogram(
            'lp_loop_duration_sec',
            'Wall time of one loop cycle (seconds)',
            labelnames=['loop'],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=reg
        )

        # === Liquidity actions ===
        self.liquidity_removals = Counter(
            'lp_liquidity_removals_total',
            'Remove-liquidity calls issued',
            labelnames=['reason'],
            registry=reg
        )
        self.circuit_breaker_trips = Counter(
            'lp_circuit_breaker_trips_total',
            'Circuit breaker trips',
            labelnames=['breaker'],
            registry=reg
        )
        self.rebalances = Counter(
            'lp_rebalances_total',
            'Positions re-ranged',
            registry=reg
        )
        self.rebalance_failures = Counter(
            'lp_rebalance_failures_total',
            'Rebalance attempts that failed',
            registry=reg
        )
        self.fees_claimed_usd = Counter(
            'lp_fees_claimed_usd_total',
            'Fees claimed (USD at claim time)',
            registry=reg
        )

        # === Orders ===
        self.orders_triggered = Counter(
            'lp_orders_triggered_total',
            'Orders whose trigger condition held',
            labelnames=['order_type'],
            registry=reg
        )
        self.orders_executed = Counter(
            'lp_orders_executed_total',
            'Orders executed successfully',
            labelnames=['order_type'],
            registry=reg
        )
        self.orders_failed = Counter(
            'lp_orders_failed_total',
            'Orders that failed during execution',
            labelnames=['order_type'],
            registry=reg
        )

        # === Positions ===
        self.tracked_positions = Gauge(
            'lp_tracked_positions',
            'Positions in the store',
            registry=reg
        )
        self.total_value_usd = Gauge(
            'lp_total_value_usd',
            'Sum of valued positions (USD)',
            registry=reg
        )
        self.positions_by_status = Gauge(
            'lp_positions_by_status',
            'Positions per range status',
            labelnames=['status'],
            registry=reg
        )

        # === Remote calls ===
        self.retries = Counter(
            'lp_retries_total',
            'Retries of transient remote failures',
            labelnames=['label'],
            registry=reg
        )

    def record_retry(self, label: str) -> None:
        self.retries.labels(label=label).inc()
