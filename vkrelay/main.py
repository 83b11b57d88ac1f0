"""
Main application entry point for the VK group wall to Telegram chat relay.
Wires the platform clients, the polling engine and the command router together.
"""
import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog

from vkrelay.clients import ClientFactory
from vkrelay.config import Settings, get_settings
from vkrelay.core import ChatBindingTable, FatalStartupError, GroupSubscriptionRegistry, PostDispatcher, UpdatePoller
from vkrelay.handlers import CommandRouter

logger = structlog.get_logger(__name__)


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structured logging on top of it."""
    level = logging.DEBUG if settings.debug_mode else getattr(logging, settings.log_level)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler('relay.log', encoding='utf-8')
        ]
    )
    # Keep the long poll request log quiet
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class RelayBot:
    """Main application class for the relay."""

    def __init__(self, settings: Settings, client_factory: Optional[ClientFactory] = None):
        self.settings = settings
        self.client_factory = client_factory or ClientFactory(settings)
        self.registry = GroupSubscriptionRegistry()
        self.bindings = ChatBindingTable()
        self.poller: Optional[UpdatePoller] = None
        self.dispatcher: Optional[PostDispatcher] = None
        self.router: Optional[CommandRouter] = None
        self._shutdown_event = asyncio.Event()
        self._running = False

    async def initialize(self) -> None:
        """Connect the clients and wire poller, dispatcher and router."""
        logger.info("Initializing VK relay...")

        await self.client_factory.initialize()
        vk = self.client_factory.vk_client
        telegram = self.client_factory.telegram_client

        self.poller = UpdatePoller.from_settings(vk, self.registry, self.settings)
        self.dispatcher = PostDispatcher(self.bindings, telegram)
        self.poller.add_listener(self.dispatcher)

        self.router = CommandRouter.from_settings(vk, self.poller, self.bindings, telegram, self.settings)
        self.router.register(telegram.application)

        logger.info("Relay initialization completed successfully")

    async def start(self) -> None:
        """Start receiving commands and polling."""
        if self._running:
            return

        logger.info("Starting VK relay...")
        await self.client_factory.start_all()
        self.poller.start(self._shutdown_event)
        self._running = True
        logger.info("🚀 VK relay is now running!")
        self._log_system_status()

    async def stop(self) -> None:
        """Stop all components gracefully. Safe to call more than once."""
        logger.info("Stopping VK relay...")
        self._running = False
        self._shutdown_event.set()

        try:
            if self.poller and self.poller.is_running:
                await self.poller.stop(self.settings.shutdown_grace_seconds)
                logger.info("Update poller stopped", **self.poller.get_statistics())

            await self.client_factory.stop_all()
            logger.info("✅ VK relay stopped gracefully")

        except Exception as e:
            logger.error("Shutdown did not complete cleanly", error=str(e), exc_info=True)

    async def run(self) -> None:
        """Run the relay until a shutdown signal arrives."""
        try:
            await self.initialize()
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def _log_system_status(self) -> None:
        logger.info("Client status", **self.client_factory.get_client_status())
        if self.poller:
            logger.info("Poller status", **self.poller.get_statistics())

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Turn SIGINT and SIGTERM into a shutdown request."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: self._on_signal(signum))

    def _on_signal(self, signum) -> None:
        logger.info("Shutdown signal received", signal=signum)
        self.request_shutdown()

    @property
    def is_running(self) -> bool:
        return self._running


async def main() -> int:
    """Load settings, run the relay and return the process exit status."""
    try:
        settings = get_settings()
    except Exception as e:
        print(f"❌ Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging(settings)

    bot = RelayBot(settings)
    bot.setup_signal_handlers()

    try:
        await bot.run()
    except FatalStartupError as e:
        logger.critical("Fatal startup error", error=str(e))
        return 1
    except Exception as e:
        logger.error("Relay crashed", error=str(e), exc_info=True)
        return 1
    return 0


def run() -> None:
    """Console script entry point."""
    # uvloop does not support Windows
    if sys.platform != 'win32':
        import uvloop
        sys.exit(uvloop.run(main()))
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
