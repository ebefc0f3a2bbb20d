"""Entry point for the event bus process: load settings, start the bus, wait for a stop signal."""

import asyncio
import logging
import signal
from pathlib import Path

from dotenv import load_dotenv

from eventbus.bus import EventBus
from eventbus.logging_config import setup_logging
from eventbus.settings import load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still reaches main()
            pass


async def main_async() -> None:
    """Bootstrap: settings -> logging -> bus -> start -> wait for shutdown -> stop."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    bus = EventBus.from_settings(settings)
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    await bus.start()
    logger.info("Event bus running (%d event types)", len(bus.registry))
    try:
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("Shutting down event bus")
        await bus.stop()


def main() -> None:
    """Synchronous entry for the event bus process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = ["main", "main_async"]
