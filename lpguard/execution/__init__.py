from lpguard.execution.fee_collector import FeeClaimResult, FeeCollector
from lpguard.execution.order_manager import (
    OrderExecutionError,
    OrderManager,
    OrderPollResult,
    should_trigger,
    validate_order_config,
)

__all__ = [
    "FeeClaimResult",
    "FeeCollector",
    "OrderExecutionError",
    "OrderManager",
    "OrderPollResult",
    "should_trigger",
    "validate_order_config",
]
