"""Subscription-and-polling core of the relay."""

from .errors import CursorExpiredError, FatalStartupError, RelayError, TransientFetchError, VkApiError
from .models import FetchResult, Group, LongPollCursor, NotFound, Post, WatchStatus
from .post_dispatcher import DispatchReport, PostDispatcher
from .registry import ChatBindingTable, GroupSubscriptionRegistry
from .update_poller import CycleReport, UpdatePoller

__all__ = [
    "ChatBindingTable",
    "CursorExpiredError",
    "CycleReport",
    "DispatchReport",
    "FatalStartupError",
    "FetchResult",
    "Group",
    "GroupSubscriptionRegistry",
    "LongPollCursor",
    "NotFound",
    "Post",
    "PostDispatcher",
    "RelayError",
    "TransientFetchError",
    "UpdatePoller",
    "VkApiError",
    "WatchStatus",
]
