"""
Library entry point for the layer that embeds the engine (API server,
CLI). The AMM client is supplied by that layer.

    asyncio.run(run_engine(my_amm_client))
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

from prometheus_client import start_http_server

from lpguard.amm.client import AmmClient
from lpguard.config.config import Settings
from lpguard.engine_context import EngineContext
from lpguard.infra.logging_cfg import WARNING, build_logger, log_event
from lpguard.orchestrator.engine_orchestrator import EngineOrchestrator


def build_engine(amm: AmmClient, settings: Settings) -> EngineOrchestrator:
    return EngineOrchestrator(EngineContext.build(settings, amm))


async def run_engine(amm: AmmClient, settings: Optional[Settings] = None) -> None:
    """Run until SIGINT/SIGTERM, then stop the loops and wait for in-flight work."""
    cfg = settings or Settings.load()
    log = build_logger("lpguard", level=cfg.log_level, file_path=cfg.log_file or None)

    engine = build_engine(amm, cfg)
    if cfg.metrics_port > 0:
        start_http_server(cfg.metrics_port, registry=engine.ctx.metrics.registry)
        log_event(log, "metrics_server_started", port=cfg.metrics_port)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    # Windows has no add_signal_handler; KeyboardInterrupt covers it there.
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass

    await engine.initialize()
    try:
        await stop_requested.wait()
    except asyncio.CancelledError:
        log_event(log, "shutdown_signal", level=WARNING)
    finally:
        await engine.shutdown()
        await engine.wait_closed()
        log_event(log, "shutdown_complete")
