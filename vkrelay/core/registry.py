"""
In-memory subscription and binding state.

Both structures are shared between the poller task and the command handlers,
so every access goes through a lock and readers only ever see copies.
"""
import threading
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from .models import ChatId, GroupId


class GroupSubscriptionRegistry:
    """Maps each watched group to its polling cursor."""

    def __init__(self):
        self._cursors: Dict[GroupId, Any] = {}
        self._lock = threading.Lock()

    def upsert(self, group_id: GroupId, cursor: Any) -> None:
        """Insert or overwrite the cursor for a group."""
        with self._lock:
            self._cursors[group_id] = cursor

    def snapshot(self) -> List[Tuple[GroupId, Any]]:
        """Return the (group_id, cursor) pairs for one polling pass."""
        with self._lock:
            return list(self._cursors.items())

    def get(self, group_id: GroupId) -> Optional[Any]:
        with self._lock:
            return self._cursors.get(group_id)

    def __contains__(self, group_id: object) -> bool:
        with self._lock:
            return group_id in self._cursors

    def __len__(self) -> int:
        with self._lock:
            return len(self._cursors)


class ChatBindingTable:
    """Maps each source group to the set of chats its posts are relayed to."""

    def __init__(self):
        self._chats: Dict[GroupId, Set[ChatId]] = {}
        self._lock = threading.Lock()

    def bind(self, group_id: GroupId, chat_id: ChatId) -> bool:
        """Bind a chat to a group. Returns False if the binding already existed."""
        with self._lock:
            chats = self._chats.setdefault(group_id, set())
            if chat_id in chats:
                return False
            chats.add(chat_id)
            return True

    def chats_for(self, group_id: GroupId) -> FrozenSet[ChatId]:
        """Return the chats bound to a group (empty if none)."""
        with self._lock:
            return frozenset(self._chats.get(group_id, ()))

    def groups_for(self, chat_id: ChatId) -> FrozenSet[GroupId]:
        with self._lock:
            return frozenset(g for g, chats in self._chats.items() if chat_id in chats)

    def __len__(self) -> int:
        with self._lock:
            return len(self._chats)
