from lpguard.rebalance.rebalance_manager import RebalanceManager, RebalanceScanResult, needs_rebalance

__all__ = ["RebalanceManager", "RebalanceScanResult", "needs_rebalance"]
