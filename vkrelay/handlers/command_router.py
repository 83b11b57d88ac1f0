"""
Command router for inbound Telegram messages.

Recognizes the bind command (`/Bind <group>`), validates the group against VK,
starts watching it and records the chat binding.
"""
import enum
import re
from typing import Any, Optional, Protocol, Tuple, Union

import structlog
from telegram import Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from vkrelay.core.models import ChatId, LookupResult, NotFound, WatchStatus
from vkrelay.core.post_dispatcher import MessageSender
from vkrelay.core.registry import ChatBindingTable
from vkrelay.core.update_poller import UpdatePoller

logger = structlog.get_logger(__name__)

BOUND_TEXT = "✅ Posts from «{name}» (vk.com/club{group_id}) will now be relayed to this chat."
ALREADY_BOUND_TEXT = "ℹ️ «{name}» is already relayed to this chat."
NOT_FOUND_TEXT = "❌ Group {identifier} was not found."
ACCESS_DENIED_TEXT = "🔒 Group {identifier} exists, but the relay's VK token has no access to its wall updates."
FAILED_TEXT = "⚠️ Could not subscribe to {identifier} right now. Please try again later."

_NUMERIC_ID_RE = re.compile(r"^(?:-|club|public|event)?(\d+)$", re.IGNORECASE)
_SCREEN_NAME_RE = re.compile(r"^(?=.*[a-z])[a-z0-9_.]{2,64}$", re.IGNORECASE)
_VK_URL_RE = re.compile(r"^(?:https?://)?(?:m\.)?vk\.com/", re.IGNORECASE)


class GroupLookup(Protocol):
    async def lookup_group(self, identifier: Union[int, str]) -> LookupResult: ...


class CommandOutcome(enum.Enum):
    IGNORED = "ignored"
    BOUND = "bound"
    ALREADY_BOUND = "already_bound"
    NOT_FOUND = "not_found"
    FAILED = "failed"


def parse_command(text: Optional[str], prefix: str = "/", command: str = "Bind",
                  bot_username: Optional[str] = None) -> Optional[Tuple[str, ...]]:
    """Return the arguments of `<prefix><command>[@bot] args...`, or None for any other text.

    When `bot_username` is known, a command addressed to another bot is not ours.
    """
    if not text:
        return None
    parts = text.split()
    if not parts or not parts[0].startswith(prefix):
        return None
    name, _, mention = parts[0][len(prefix):].partition("@")
    if name.lower() != command.lower():
        return None
    if mention and bot_username and mention.lower() != bot_username.lstrip("@").lower():
        return None
    return tuple(parts[1:])


def parse_group_identifier(argument: str) -> Optional[Union[int, str]]:
    """Normalize a group reference: 42, -42, club42, vk.com/club42 or a screen name."""
    value = _VK_URL_RE.sub("", argument.strip()).strip("/")
    match = _NUMERIC_ID_RE.match(value)
    if match:
        group_id = int(match.group(1))
        return group_id if group_id > 0 else None
    if _SCREEN_NAME_RE.match(value):
        return value.lower()
    return None


class CommandRouter:
    """Routes bind commands to the lookup, the poller and the binding table."""

    def __init__(self, lookup: GroupLookup, poller: UpdatePoller, bindings: ChatBindingTable,
                 sender: MessageSender, *, prefix: str = "/", command: str = "Bind"):
        self.lookup = lookup
        self.poller = poller
        self.bindings = bindings
        self.sender = sender
        self.prefix = prefix
        self.command = command
        self.logger = logger.bind(component="command_router")

    @classmethod
    def from_settings(cls, lookup: GroupLookup, poller: UpdatePoller, bindings: ChatBindingTable,
                      sender: MessageSender, settings) -> "CommandRouter":
        return cls(lookup, poller, bindings, sender,
                   prefix=settings.command_prefix, command=settings.bind_command)

    def register(self, application: Application) -> None:
        """Register the router with the bot application."""
        application.add_handler(MessageHandler(filters.TEXT, self.handle_update))
        self.logger.info("command_handler_registered", command=f"{self.prefix}{self.command}")

    async def handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """python-telegram-bot entry point."""
        message = update.effective_message
        if message is None or not message.text:
            return
        bot = getattr(context, "bot", None)
        await self.handle_message(message.chat_id, message.text, getattr(bot, "username", None))

    async def handle_message(self, chat_id: ChatId, text: Optional[str],
                             bot_username: Optional[str] = None) -> CommandOutcome:
        args = parse_command(text, self.prefix, self.command, bot_username)
        if args is None:
            return CommandOutcome.IGNORED

        raw = " ".join(args) or "(none)"
        log = self.logger.bind(chat_id=chat_id, argument=raw)
        identifier = parse_group_identifier(args[0]) if len(args) == 1 else None
        if identifier is None:
            log.info("bind_malformed_identifier")
            await self._reply(chat_id, NOT_FOUND_TEXT.format(identifier=raw))
            return CommandOutcome.NOT_FOUND

        try:
            group = await self.lookup.lookup_group(identifier)
        except Exception as e:
            log.error("group_lookup_failed", error=str(e), exc_info=True)
            await self._reply(chat_id, FAILED_TEXT.format(identifier=raw))
            return CommandOutcome.FAILED

        if isinstance(group, NotFound):
            log.info("bind_group_not_found", reason=group.reason, access_denied=group.access_denied)
            text = ACCESS_DENIED_TEXT if group.access_denied else NOT_FOUND_TEXT
            await self._reply(chat_id, text.format(identifier=raw))
            return CommandOutcome.NOT_FOUND

        status = await self.poller.watch(group.id)
        if status is WatchStatus.NOT_FOUND:
            await self._reply(chat_id, NOT_FOUND_TEXT.format(identifier=raw))
            return CommandOutcome.NOT_FOUND
        if status is WatchStatus.ACCESS_DENIED:
            await self._reply(chat_id, ACCESS_DENIED_TEXT.format(identifier=raw))
            return CommandOutcome.NOT_FOUND
        if status is WatchStatus.FAILED:
            await self._reply(chat_id, FAILED_TEXT.format(identifier=raw))
            return CommandOutcome.FAILED

        if not self.bindings.bind(group.id, chat_id):
            await self._reply(chat_id, ALREADY_BOUND_TEXT.format(name=group.name))
            return CommandOutcome.ALREADY_BOUND

        log.info("group_bound", group_id=group.id, group_name=group.name, watch_status=status.value)
        await self._reply(chat_id, BOUND_TEXT.format(name=group.name, group_id=group.id))
        return CommandOutcome.BOUND

    async def _reply(self, chat_id: ChatId, text: str) -> Optional[Any]:
        try:
            return await self.sender.send_message(chat_id, text)
        except Exception as e:
            self.logger.error("reply_failed", chat_id=chat_id, error=str(e), exc_info=True)
            return None
