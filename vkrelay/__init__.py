"""Relay of VK community wall posts into Telegram chats."""

__version__ = "1.0.0"
