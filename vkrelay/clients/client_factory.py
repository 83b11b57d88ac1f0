"""
Client factory for the two platform clients.
Owns the VK API client (source) and the Telegram bot client (destination).
"""
import logging
from typing import Any, Dict, Optional

from .rate_limiter import AsyncRateLimiter
from .telegram_client import TelegramClientManager
from .vk_client import VkApiClient

logger = logging.getLogger(__name__)


class ClientFactory:
    """Creates, starts and stops both platform clients together."""

    def __init__(self, settings, vk_client: Optional[VkApiClient] = None,
                 telegram_client: Optional[TelegramClientManager] = None):
        self.settings = settings
        self.vk_client = vk_client or VkApiClient.from_settings(
            settings, rate_limiter=AsyncRateLimiter.per_second(settings.vk_requests_per_second)
        )
        self.telegram_client = telegram_client or TelegramClientManager(settings.telegram_bot_token)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize both clients and verify the VK token."""
        if self._initialized:
            return

        logger.info("Connecting to VK and Telegram...")
        await self.vk_client.initialize()
        own_group = await self.vk_client.verify_credentials()
        if own_group:
            logger.info(f"VK token belongs to community {own_group.name} ({own_group.id})")
        await self.telegram_client.initialize()

        self._initialized = True
        logger.info("VK token verified, Telegram application ready")

    async def start_all(self) -> None:
        """Start receiving Telegram updates."""
        if not self._initialized:
            await self.initialize()

        logger.info("Starting Telegram polling...")
        await self.telegram_client.start()

    async def stop_all(self) -> None:
        """Stop Telegram polling first, then close the VK session."""
        logger.info("Shutting down platform clients...")

        await self.telegram_client.stop()
        await self.vk_client.close()

        logger.info("Platform clients closed")

    def get_client_status(self) -> Dict[str, Any]:
        """Snapshot of both clients for status logging."""
        return {
            "vk_client": {
                "running": self.vk_client.is_running,
                "api_version": self.vk_client.api_version,
            },
            "telegram_client": {
                "running": self.telegram_client.is_running,
                "initialized": self.telegram_client.application is not None,
            },
            "factory_initialized": self._initialized,
        }
