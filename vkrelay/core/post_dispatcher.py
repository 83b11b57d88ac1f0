"""
Post dispatcher: the poller listener that relays each new post to every bound chat.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, List, Optional, Protocol

import structlog

from .models import ChatId, GroupId, Post
from .registry import ChatBindingTable

logger = structlog.get_logger(__name__)

TELEGRAM_MESSAGE_LIMIT = 4096


class MessageSender(Protocol):
    """Destination platform surface: returns None (or raises) on failure."""

    def send_message(self, chat_id: ChatId, text: str, **kwargs: Any) -> Awaitable[Optional[Any]]: ...


@dataclass
class DispatchReport:
    delivered: List[ChatId] = field(default_factory=list)
    failed: List[ChatId] = field(default_factory=list)


def format_post(post: Post) -> str:
    """Render a post for the chat. Posts without text are relayed as a link."""
    text = (post.text or "").strip()
    return text or post.url


def split_message(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT) -> List[str]:
    """Split text into chunks no longer than `limit`, preferring line breaks."""
    chunks: List[str] = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class PostDispatcher:
    """Forwards posts to the chats bound to their source group."""

    def __init__(self, bindings: ChatBindingTable, sender: MessageSender,
                 message_limit: int = TELEGRAM_MESSAGE_LIMIT):
        self.bindings = bindings
        self.sender = sender
        self.message_limit = message_limit
        self.logger = logger.bind(component="post_dispatcher")

    async def __call__(self, group_id: GroupId, post: Post) -> DispatchReport:
        return await self.dispatch(group_id, post)

    async def dispatch(self, group_id: GroupId, post: Post) -> DispatchReport:
        report = DispatchReport()
        chats = self.bindings.chats_for(group_id)
        if not chats:
            self.logger.debug("no_bound_chats", group_id=group_id, post_id=post.id)
            return report

        chunks = split_message(format_post(post), self.message_limit)
        for chat_id in sorted(chats):
            if await self._deliver(chat_id, chunks, group_id, post):
                report.delivered.append(chat_id)
            else:
                report.failed.append(chat_id)

        self.logger.info(
            "post_dispatched",
            group_id=group_id,
            post_id=post.id,
            delivered=len(report.delivered),
            failed=len(report.failed),
        )
        return report

    async def _deliver(self, chat_id: ChatId, chunks: List[str], group_id: GroupId, post: Post) -> bool:
        for chunk in chunks:
            try:
                result = await self.sender.send_message(chat_id, chunk)
            except Exception as e:
                self.logger.error(
                    "post_delivery_failed",
                    chat_id=chat_id,
                    group_id=group_id,
                    post_id=post.id,
                    error=str(e),
                    exc_info=True,
                )
                return False
            if result is None:
                self.logger.warning("post_delivery_rejected", chat_id=chat_id, group_id=group_id, post_id=post.id)
                return False
        return True
