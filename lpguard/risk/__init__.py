from lpguard.risk.risk_manager import (
    CircuitBreakerResult,
    RiskCycleResult,
    RiskManager,
    RiskState,
    SyncResult,
    VolumeBaseline,
)

__all__ = [
    "CircuitBreakerResult",
    "RiskCycleResult",
    "RiskManager",
    "RiskState",
    "SyncResult",
    "VolumeBaseline",
]
