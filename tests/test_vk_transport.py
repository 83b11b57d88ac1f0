"""VkApiClient against a local aiohttp server, covering the real HTTP error mapping."""
import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from vkrelay.clients.vk_client import VkApiClient
from vkrelay.core.errors import TransientFetchError, VkApiError
from vkrelay.core.models import Group, LongPollCursor


def _run_against(routes, scenario, **client_kwargs):
    """Start a server with `routes`, point a client at it and run `scenario(client, server)`."""

    async def main():
        app = web.Application()
        for method, path, handler in routes:
            app.router.add_route(method, path, handler)
        server = TestServer(app)
        await server.start_server()
        client_kwargs.setdefault("request_timeout", 5)
        client = VkApiClient("token", api_url=str(server.make_url("/method")), longpoll_wait=0, **client_kwargs)
        await client.initialize()
        try:
            return await scenario(client, server)
        finally:
            await client.close()
            await server.close()

    return asyncio.run(main())


def test_method_call_posts_token_and_version() -> None:
    received = {}

    async def get_by_id(request):
        received.update(await request.post())
        return web.json_response({"response": {"groups": [{"id": 42, "name": "Cats", "screen_name": "cats"}]}})

    async def scenario(client, server):
        return await client.lookup_group("cats")

    group = _run_against([("POST", "/method/groups.getById", get_by_id)], scenario)

    assert group == Group(id=42, name="Cats", screen_name="cats")
    assert received == {"group_id": "cats", "access_token": "token", "v": "5.199"}


def test_api_error_payload_is_raised_as_vk_api_error() -> None:
    async def get_by_id(request):
        return web.json_response({"error": {"error_code": 6, "error_msg": "Too many requests per second"}})

    async def scenario(client, server):
        with pytest.raises(VkApiError) as excinfo:
            await client.call("groups.getById")
        return excinfo.value

    error = _run_against([("POST", "/method/groups.getById", get_by_id)], scenario)
    assert error.code == 6


def test_long_poll_request_carries_cursor_params() -> None:
    received = {}

    async def a_check(request):
        received.update(request.query)
        return web.json_response({
            "ts": "11",
            "updates": [{
                "type": "wall_post_new",
                "group_id": 42,
                "object": {"id": 101, "owner_id": -42, "text": "hi", "post_type": "post"},
            }],
        })

    async def scenario(client, server):
        cursor = LongPollCursor(server=str(server.make_url("/lp")), key="secret", ts="10")
        return await client.fetch_since(42, cursor)

    result = _run_against([("GET", "/lp", a_check)], scenario)

    assert received == {"act": "a_check", "key": "secret", "ts": "10", "wait": "0"}
    assert [post.id for post in result.posts] == [101]
    assert result.cursor.ts == "11"


async def _server_error(request):
    return web.Response(status=500, text="Internal Server Error")


async def _html_body(request):
    return web.Response(status=200, text="<html>maintenance</html>", content_type="text/html")


async def _list_body(request):
    return web.json_response([1, 2, 3])


@pytest.mark.parametrize("handler", [_server_error, _html_body, _list_body], ids=["http-500", "not-json", "list-body"])
def test_bad_responses_become_transient_errors(handler) -> None:
    async def scenario(client, server):
        cursor = LongPollCursor(server=str(server.make_url("/lp")), key="secret", ts="10")
        with pytest.raises(TransientFetchError):
            await client.call("groups.getById")
        with pytest.raises(TransientFetchError):
            await client.fetch_since(42, cursor)

    _run_against([("POST", "/method/groups.getById", handler), ("GET", "/lp", handler)], scenario)


def test_slow_long_poll_times_out_as_transient_error() -> None:
    release = asyncio.Event()

    async def hanging(request):
        await asyncio.wait_for(release.wait(), 5)
        return web.json_response({"ts": "11", "updates": []})

    async def scenario(client, server):
        cursor = LongPollCursor(server=str(server.make_url("/lp")), key="secret", ts="10")
        try:
            with pytest.raises(TransientFetchError):
                await client.fetch_since(42, cursor)
        finally:
            release.set()

    _run_against([("GET", "/lp", hanging)], scenario, request_timeout=0.2)


def test_refused_connection_becomes_transient_error() -> None:
    async def main():
        client = VkApiClient("token", api_url=f"http://127.0.0.1:{unused_port()}/method", request_timeout=5)
        await client.initialize()
        try:
            with pytest.raises(TransientFetchError):
                await client.call("groups.getById")
        finally:
            await client.close()

    asyncio.run(main())
