"""Entry point for the long-running orchestrator service."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .core.config import OrchestratorConfig, load_config
from .core.service_manager import ServiceManager
from .llm.command_executor import CommandTurnExecutor
from .utils.error_handling import log_and_reraise
from .utils.rich_logging import setup_rich_logging

logger = logging.getLogger(__name__)


def build_service(config: OrchestratorConfig) -> ServiceManager:
    """Service wired to the subprocess executor from ``config.executor``."""
    return ServiceManager(config, CommandTurnExecutor(config.executor))


async def serve(config: OrchestratorConfig, service: Optional[ServiceManager] = None) -> None:
    """Run until SIGINT/SIGTERM, then stop every loop cooperatively."""
    service = service or build_service(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    logger.info("Orchestrator service running (Ctrl+C to stop)")
    await service.run_forever(stop_event)
    logger.info("Orchestrator service stopped")


def main(config_path: Path = Path("autopilot.yaml")) -> None:
    """Main entry point for the service process."""
    try:
        config = load_config(config_path)
    except Exception as e:
        log_and_reraise(e, f"Failed to load config from {config_path}", log_to=logger)

    setup_rich_logging(
        component_id="service",
        state_dir=config.state_dir,
        log_level=config.log_level,
        use_file=True,
        use_json=False,
    )

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        logger.info("Service interrupted, shutting down")
    except Exception as e:
        logger.exception(f"Service crashed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main(Path(sys.argv[1]) if len(sys.argv) > 1 else Path("autopilot.yaml"))
