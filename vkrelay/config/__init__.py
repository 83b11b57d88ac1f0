"""Configuration module for the VK to Telegram relay."""

from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
