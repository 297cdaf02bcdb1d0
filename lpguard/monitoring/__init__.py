from lpguard.monitoring.metrics_rich import EngineMetrics

__all__ = ["EngineMetrics"]
