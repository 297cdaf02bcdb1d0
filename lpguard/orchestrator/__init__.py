from lpguard.orchestrator.engine_orchestrator import EngineOrchestrator, OrchestratorStats

__all__ = ["EngineOrchestrator", "OrchestratorStats"]
