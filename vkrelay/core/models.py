"""
Value types shared by the polling engine, the dispatcher and the platform clients.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

GroupId = int
ChatId = int

VK_WALL_URL = "https://vk.com/wall{owner_id}_{post_id}"


@dataclass(frozen=True)
class Post:
    """A wall post retrieved from the source platform."""
    id: int
    owner_id: int
    text: str = ""

    @property
    def url(self) -> str:
        return VK_WALL_URL.format(owner_id=self.owner_id, post_id=self.id)


@dataclass(frozen=True)
class Group:
    """A source platform community."""
    id: GroupId
    name: str
    screen_name: Optional[str] = None


@dataclass(frozen=True)
class NotFound:
    """Typed 'group not found' result returned instead of raising."""
    identifier: str
    reason: str = "not found"
    # the group exists but the token may not watch it
    access_denied: bool = False


@dataclass(frozen=True)
class LongPollCursor:
    """Bots Long Poll resume point: server URL, session key and event number."""
    server: str
    key: str
    ts: str

    def advance(self, ts: Any) -> "LongPollCursor":
        return LongPollCursor(server=self.server, key=self.key, ts=str(ts))


@dataclass(frozen=True)
class FetchResult:
    """New posts since a cursor plus the cursor to resume from next time."""
    posts: List[Post] = field(default_factory=list)
    cursor: Any = None


class WatchStatus(enum.Enum):
    """Outcome of asking the poller to watch a group."""
    ACTIVE = "active"
    ALREADY_ACTIVE = "already_active"
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    FAILED = "failed"


Listener = Callable[[GroupId, Post], Awaitable[Any]]
LookupResult = Union[Group, NotFound]
