import asyncio
import os
import sys
from typing import Dict, List, Optional, Set, Union

import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from vkrelay.core.errors import CursorExpiredError, TransientFetchError
from vkrelay.core.models import FetchResult, Group, NotFound, Post


class FakeVkSource:
    """In-memory source platform. Cursors are the id of the newest post seen."""

    def __init__(self):
        self.groups: Dict[int, Group] = {}
        self.walls: Dict[int, List[Post]] = {}
        self.failures: Dict[int, int] = {}
        self.expired: Set[int] = set()
        self.init_errors: Dict[int, Exception] = {}
        self.unwatchable: Set[int] = set()
        self.no_access: Set[int] = set()
        self.init_delay = 0.0
        self.fetch_calls: List[tuple] = []
        self.init_calls: List[int] = []
        self.lookup_calls: List[Union[int, str]] = []

    def add_group(self, group_id: int, name: str, post_ids=()) -> Group:
        group = Group(id=group_id, name=name, screen_name=f"club{group_id}")
        self.groups[group_id] = group
        self.walls[group_id] = [Post(id=i, owner_id=-group_id, text=f"post {i}") for i in post_ids]
        return group

    def publish(self, group_id: int, post_id: int, text: Optional[str] = None) -> Post:
        post = Post(id=post_id, owner_id=-group_id, text=f"post {post_id}" if text is None else text)
        self.walls[group_id].append(post)
        return post

    def _latest(self, group_id: int) -> int:
        return max((p.id for p in self.walls[group_id]), default=0)

    async def lookup_group(self, identifier):
        self.lookup_calls.append(identifier)
        if isinstance(identifier, int) and identifier in self.groups:
            return self.groups[identifier]
        for group in self.groups.values():
            if group.screen_name == identifier:
                return group
        return NotFound(str(identifier))

    async def initialize_watch(self, group_id: int):
        self.init_calls.append(group_id)
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if group_id in self.init_errors:
            raise self.init_errors[group_id]
        if group_id in self.no_access:
            return NotFound(str(group_id), "Access to the group is denied", access_denied=True)
        if group_id not in self.groups or group_id in self.unwatchable:
            return NotFound(str(group_id), "One of the parameters specified was missing or invalid")
        return self._latest(group_id)

    async def fetch_since(self, group_id: int, cursor: int) -> FetchResult:
        self.fetch_calls.append((group_id, cursor))
        if self.failures.get(group_id):
            self.failures[group_id] -= 1
            raise TransientFetchError("connection reset")
        if group_id in self.expired:
            self.expired.discard(group_id)
            raise CursorExpiredError("long poll session expired (failed=2)")
        new_posts = [p for p in self.walls[group_id] if p.id > cursor]
        # newest first, the way walls are listed
        new_posts.sort(key=lambda p: p.id, reverse=True)
        return FetchResult(posts=new_posts, cursor=max([cursor] + [p.id for p in new_posts]))


class FakeSender:
    """Records sent messages; chats in `reject` get None, chats in `explode` raise."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.reject: Set[int] = set()
        self.explode: Set[int] = set()

    async def send_message(self, chat_id: int, text: str, **kwargs):
        if chat_id in self.explode:
            raise RuntimeError("Forbidden: bot was kicked from the group chat")
        if chat_id in self.reject:
            return None
        self.sent.append((chat_id, text))
        return {"message_id": len(self.sent), "chat_id": chat_id}

    def texts_for(self, chat_id: int) -> List[str]:
        return [text for cid, text in self.sent if cid == chat_id]


@pytest.fixture
def source() -> FakeVkSource:
    return FakeVkSource()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()
