"""
Worker process entry point.

Builds an engine from settings, lets every module listed in
``handler_modules`` register its handlers, and runs until SIGTERM/SIGINT.
"""

import asyncio
import importlib
import logging
import signal

from workqueue.config import Settings, get_settings
from workqueue.engine import QueueEngine
from workqueue.errors import HandlerRegistrationError
from workqueue.observability.logging import setup_logging
from workqueue.observability.metrics import setup_metrics
from workqueue.observability.tracing import setup_tracing

logger = logging.getLogger(__name__)


def load_handlers(engine: QueueEngine, module_names: list[str]) -> None:
    """
    Import handler modules and call their ``register(engine)``.

    Raises:
        HandlerRegistrationError: If a module has no ``register`` function.
    """
    for name in module_names:
        module = importlib.import_module(name)
        register = getattr(module, "register", None)
        if not callable(register):
            raise HandlerRegistrationError(f"Handler module '{name}' has no register(engine)")
        register(engine)
        logger.info(f"Loaded handler module: {name}")


async def run_async(settings: Settings | None = None) -> None:
    """Run the worker asynchronously."""
    settings = settings or get_settings()
    setup_logging(settings)
    setup_metrics()
    setup_tracing(settings)

    engine = QueueEngine(settings=settings)
    load_handlers(engine, settings.handler_modules)

    stop = asyncio.Event()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    await engine.init()
    try:
        await stop.wait()
    finally:
        await engine.shutdown()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
