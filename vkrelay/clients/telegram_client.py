"""
Telegram side of the relay, built on python-telegram-bot v20+.
Long polls for chat messages (bind commands) and delivers relayed posts.
"""
import logging
from typing import Any, Dict, Optional

from telegram import Bot, Update
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TelegramError, TimedOut
from telegram.ext import Application, ContextTypes

from vkrelay.core.errors import FatalStartupError

logger = logging.getLogger(__name__)


class TelegramClientManager:
    """Owns the bot Application; doubles as the relay's message sender."""

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None
        self._polling = False

    async def initialize(self) -> None:
        if self.application is not None:
            return
        # One task per update so a slow VK lookup never blocks other chats.
        self.application = Application.builder().token(self.bot_token).concurrent_updates(True).build()
        self.application.add_error_handler(self._on_handler_error)
        self.bot = self.application.bot
        logger.info("Telegram application built")

    async def start(self) -> None:
        """Validate the token and begin long polling for chat messages."""
        await self.initialize()
        try:
            await self.application.initialize()
        except (InvalidToken, NetworkError) as e:
            raise FatalStartupError(f"Cannot start Telegram bot: {e}") from e

        await self.application.start()
        await self.application.updater.start_polling(
            allowed_updates=[Update.MESSAGE],
            drop_pending_updates=True,
        )
        self._polling = True
        logger.info(f"Listening for commands as @{self.bot.username}")

    async def stop(self) -> None:
        if self.application is None or not self._polling:
            return
        updater = self.application.updater
        if updater and updater.running:
            await updater.stop()
        await self.application.stop()
        await self.application.shutdown()
        self._polling = False
        logger.info("Telegram polling stopped")

    async def _on_handler_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        error = context.error
        if isinstance(error, RetryAfter):
            logger.warning(f"Telegram flood control while handling an update, retry after {error.retry_after}s")
        elif isinstance(error, TimedOut):
            logger.warning("Telegram request timed out while handling an update")
        else:
            logger.error(f"Unhandled error in update handler: {error}", exc_info=error)

    async def send_message(self, chat_id: int, text: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        """Send text to a chat. Returns None when Telegram refused or could not take it."""
        if self.bot is None:
            logger.error(f"Cannot send to chat {chat_id}: Telegram client is not initialized")
            return None

        try:
            sent = await self.bot.send_message(chat_id=chat_id, text=text, **kwargs)
        except Forbidden as e:
            # kicked from the chat or blocked by the user
            logger.warning(f"Chat {chat_id} refused the message: {e}")
            return None
        except BadRequest as e:
            logger.warning(f"Telegram rejected the message for chat {chat_id}: {e}")
            return None
        except RetryAfter as e:
            logger.warning(f"Flood control for chat {chat_id}, retry after {e.retry_after}s; message dropped")
            return None
        except TelegramError as e:
            logger.error(f"Sending to chat {chat_id} failed: {e}")
            return None

        return {"message_id": sent.message_id, "chat_id": sent.chat_id}

    @property
    def is_running(self) -> bool:
        return self._polling
