"""
Entry point wiring settings, logging, metrics and the grid runner.

Run with `python -m dexgrid.main`. Without a chain client only fixed-price
profiles in dry-run mode can trade; an embedding application passes its
ChainClient to `main()`.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional, TYPE_CHECKING

from prometheus_client import start_http_server

from dexgrid.config.config import Settings
from dexgrid.infra.logging_cfg import INFO, WARNING, build_logger, log_event
from dexgrid.orchestrator.grid_runner import build_runner

if TYPE_CHECKING:
    from dexgrid.execution.chain_client import ChainClient


async def main(client: Optional["ChainClient"] = None) -> None:
    cfg = Settings.load()
    log = build_logger("gridbot", cfg.log_level_value, file_path=cfg.log_file)

    runner = build_runner(cfg, client=client)
    if client is None and not runner.dry_run:
        log_event(log, "no_chain_client", WARNING, bot=runner.manager.bot_key)

    if runner.metrics is not None:
        start_http_server(cfg.metrics_port, registry=runner.metrics.get_registry())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            pass

    await runner.start()
    log_event(log, "startup", INFO, status=runner.manager.status())
    try:
        await runner.run()
    finally:
        log_event(log, "shutdown", INFO, status=runner.manager.status())


if __name__ == "__main__":
    asyncio.run(main())
