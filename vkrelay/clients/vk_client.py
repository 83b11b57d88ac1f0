"""
VK API client built on aiohttp.
Provides group lookup and Bots Long Poll based wall watching for the poller.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

import aiohttp

from vkrelay.core.errors import CursorExpiredError, FatalStartupError, TransientFetchError, VkApiError
from vkrelay.core.models import FetchResult, Group, GroupId, LongPollCursor, NotFound, Post

logger = logging.getLogger(__name__)

# User authorization failed
AUTH_FAILED_ERROR_CODE = 5
# Invalid parameter
INVALID_PARAMETER_ERROR_CODE = 100
# Access denied, access to group denied
ACCESS_DENIED_ERROR_CODES = frozenset({15, 203})
NOT_FOUND_ERROR_CODES = ACCESS_DENIED_ERROR_CODES | {INVALID_PARAMETER_ERROR_CODE}

WALL_POST_NEW = "wall_post_new"


def parse_groups(response: Any) -> List[Dict[str, Any]]:
    """groups.getById returns a bare list before API 5.139 and {"groups": [...]} after."""
    if isinstance(response, dict):
        return list(response.get("groups") or [])
    if isinstance(response, list):
        return response
    return []


def parse_longpoll_response(data: Dict[str, Any], cursor: LongPollCursor,
                            group_id: Optional[GroupId] = None) -> FetchResult:
    """Turn an a_check response into new posts and the advanced cursor."""
    failed = data.get("failed")
    if failed == 1:
        # Event history is gone; resume from the server supplied ts.
        return FetchResult(posts=[], cursor=cursor.advance(data["ts"]))
    if failed in (2, 3):
        raise CursorExpiredError(f"long poll session expired (failed={failed})")
    if failed is not None:
        raise TransientFetchError(f"long poll request failed (failed={failed})")
    if "ts" not in data:
        raise TransientFetchError("long poll response is missing ts")

    posts = []
    for update in data.get("updates") or []:
        if update.get("type") != WALL_POST_NEW:
            continue
        if group_id is not None and update.get("group_id") not in (None, group_id):
            continue
        obj = update.get("object") or {}
        if obj.get("post_type", "post") != "post" or "id" not in obj:
            continue
        owner_id = obj.get("owner_id")
        if owner_id is None and group_id is not None:
            owner_id = -group_id
        posts.append(Post(id=int(obj["id"]), owner_id=int(owner_id or 0), text=obj.get("text") or ""))

    return FetchResult(posts=posts, cursor=cursor.advance(data["ts"]))


class VkApiClient:
    """Manages the aiohttp session and all calls to the VK API."""

    def __init__(
        self,
        access_token: str,
        *,
        api_version: str = "5.199",
        api_url: str = "https://api.vk.com/method",
        longpoll_wait: int = 25,
        request_timeout: float = 35.0,
        rate_limiter=None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.access_token = access_token
        self.api_version = api_version
        self.api_url = api_url.rstrip("/")
        self.longpoll_wait = longpoll_wait
        self.request_timeout = request_timeout
        self.rate_limiter = rate_limiter
        self.session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings, rate_limiter=None) -> "VkApiClient":
        return cls(
            settings.vk_access_token,
            api_version=settings.vk_api_version,
            api_url=settings.vk_api_url,
            longpoll_wait=settings.vk_longpoll_wait,
            request_timeout=settings.vk_request_timeout,
            rate_limiter=rate_limiter,
        )

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if self.session is None:
            logger.info("Initializing VK API client...")
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            logger.info("VK API client closed")
        self.session = None

    async def call(self, method: str, **params: Any) -> Any:
        """Call a VK API method and return its `response` payload."""
        payload = {k: v for k, v in params.items() if v is not None}
        payload["access_token"] = self.access_token
        payload["v"] = self.api_version

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        data = await self._request_json("POST", f"{self.api_url}/{method}", data=payload)
        if "error" in data:
            error = data["error"] or {}
            raise VkApiError(int(error.get("error_code", 0)), error.get("error_msg", ""), method)
        return data.get("response")

    async def _request_json(self, http_method: str, url: str, *,
                            params: Optional[Dict[str, Any]] = None,
                            data: Optional[Dict[str, Any]] = None,
                            timeout: Optional[float] = None) -> Dict[str, Any]:
        if self.session is None:
            await self.initialize()

        kwargs: Dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        try:
            async with self.session.request(http_method, url, params=params, data=data, **kwargs) as resp:
                resp.raise_for_status()
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}") from e

        if not isinstance(body, dict):
            raise TransientFetchError(f"unexpected response from {url}: {body!r}")
        return body

    async def lookup_group(self, identifier: Union[int, str]) -> Union[Group, NotFound]:
        """Look up a community by numeric id or screen name."""
        try:
            response = await self.call("groups.getById", group_id=identifier)
        except VkApiError as e:
            if e.code in NOT_FOUND_ERROR_CODES:
                return NotFound(str(identifier), e.message, access_denied=e.code in ACCESS_DENIED_ERROR_CODES)
            raise

        groups = parse_groups(response)
        if not groups:
            return NotFound(str(identifier))
        group = groups[0]
        if group.get("deactivated"):
            return NotFound(str(identifier), f"group is {group['deactivated']}")
        return Group(id=int(group["id"]), name=group.get("name") or "", screen_name=group.get("screen_name"))

    async def initialize_watch(self, group_id: GroupId) -> Union[LongPollCursor, NotFound]:
        """Open a long poll session; its current ts is the 'nothing before now' baseline."""
        try:
            response = await self.call("groups.getLongPollServer", group_id=group_id)
        except VkApiError as e:
            if e.code in NOT_FOUND_ERROR_CODES:
                logger.warning(f"Cannot watch group {group_id}: {e}")
                return NotFound(str(group_id), e.message, access_denied=e.code in ACCESS_DENIED_ERROR_CODES)
            raise

        try:
            return LongPollCursor(server=response["server"], key=response["key"], ts=str(response["ts"]))
        except (KeyError, TypeError) as e:
            raise TransientFetchError(f"malformed getLongPollServer response: {response!r}") from e

    async def fetch_since(self, group_id: GroupId, cursor: LongPollCursor) -> FetchResult:
        """Wait for events after the cursor and return new wall posts."""
        params = {"act": "a_check", "key": cursor.key, "ts": cursor.ts, "wait": self.longpoll_wait}
        data = await self._request_json(
            "GET", cursor.server, params=params, timeout=self.longpoll_wait + self.request_timeout
        )
        result = parse_longpoll_response(data, cursor, group_id)
        if result.posts:
            logger.debug(f"Fetched {len(result.posts)} new posts for group {group_id}")
        return result

    async def verify_credentials(self) -> Optional[Group]:
        """Check the access token at startup. Returns the token's own community if it has one."""
        try:
            response = await self.call("groups.getById")
        except VkApiError as e:
            if e.code == AUTH_FAILED_ERROR_CODE:
                raise FatalStartupError(f"VK access token rejected: {e.message}") from e
            # Not a community token; still authorized.
            logger.info(f"VK token is valid but not bound to a community ({e.code})")
            return None
        except TransientFetchError as e:
            raise FatalStartupError(f"Cannot reach VK API: {e}") from e

        groups = parse_groups(response)
        if not groups:
            return None
        group = groups[0]
        return Group(id=int(group["id"]), name=group.get("name") or "", screen_name=group.get("screen_name"))

    @property
    def is_running(self) -> bool:
        return self.session is not None and not self.session.closed
