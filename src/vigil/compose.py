"""Composition helpers for running the monitor daemon.

These helpers make it easy to start vigil without manually wiring up
logging, configuration and signal handling.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vigil.config import DaemonConfig
    from vigil.server import MonitorDaemon

logger = logging.getLogger(__name__)


def build_daemon(config: DaemonConfig | None = None) -> MonitorDaemon:
    """Create a daemon from configuration.

    Args:
        config: Configuration. Loaded with load_config() when omitted.
    """
    from vigil.config import load_config
    from vigil.server import MonitorDaemon

    return MonitorDaemon(config or load_config())


async def run_daemon(
    config: DaemonConfig | None = None,
    config_file: str | Path | None = None,
) -> None:
    """Create and run a monitor daemon.

    This is a convenience function that blocks until SIGINT or SIGTERM.

    Args:
        config: Configuration to use as-is.
        config_file: Config file to load when ``config`` is not given.
    """
    from vigil.config import load_config
    from vigil.core.logging_config import configure_logging

    configure_logging()
    daemon = build_daemon(config or load_config(config_file))

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    try:
        await daemon.start()
        logger.info("Monitor daemon running, press Ctrl+C to stop")
        await stop_requested.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await daemon.stop()
