"""Client management module for the VK and Telegram platforms."""

from .client_factory import ClientFactory
from .rate_limiter import AsyncRateLimiter
from .telegram_client import TelegramClientManager
from .vk_client import VkApiClient

__all__ = [
    "AsyncRateLimiter",
    "ClientFactory",
    "TelegramClientManager",
    "VkApiClient",
]
