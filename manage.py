#!/usr/bin/env python3
"""
Management script for the VK to Telegram relay.
Provides CLI helpers to check configuration and exercise the VK side without Telegram.
"""
import argparse
import asyncio
import sys

from vkrelay.clients import AsyncRateLimiter, VkApiClient
from vkrelay.config import get_settings
from vkrelay.core import FatalStartupError, GroupSubscriptionRegistry, NotFound, UpdatePoller, WatchStatus
from vkrelay.handlers import parse_group_identifier


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VK relay management CLI")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # config
    config_parser = subparsers.add_parser('config', help='Configuration commands')
    config_subparsers = config_parser.add_subparsers(dest='config_action')
    config_subparsers.add_parser('check', help='Validate settings from the environment / .env')

    # vk
    vk_parser = subparsers.add_parser('vk', help='VK API commands')
    vk_subparsers = vk_parser.add_subparsers(dest='vk_action')

    vk_subparsers.add_parser('verify', help='Verify the VK access token')

    lookup_parser = vk_subparsers.add_parser('lookup', help='Look up a VK group')
    lookup_parser.add_argument('identifier', help='Group id, clubNNN or screen name')

    tail_parser = vk_subparsers.add_parser('tail', help='Print new wall posts of a group')
    tail_parser.add_argument('group_id', type=int, help='VK group id')
    tail_parser.add_argument('--cycles', type=int, default=0, help='Stop after N poll cycles (default: run forever)')

    return parser


async def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == 'config':
            return handle_config_commands(args)
        elif args.command == 'vk':
            return await handle_vk_commands(args)
        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\n⏹️  Operation cancelled by user")
        return 1
    except FatalStartupError as e:
        print(f"❌ {e}")
        return 1
    except Exception as e:
        print(f"❌ Error: {e}")
        return 1


def handle_config_commands(args) -> int:
    """Handle configuration commands."""
    if args.config_action == 'check':
        settings = get_settings()
        print("✅ Configuration loaded successfully!")
        print(f"   VK API version: {settings.vk_api_version}")
        print(f"   VK requests/second: {settings.vk_requests_per_second}")
        print(f"   Long poll wait: {settings.vk_longpoll_wait}s")
        print(f"   Bind command: {settings.command_prefix}{settings.bind_command} <group>")
        print(f"   Log level: {settings.log_level}")
        return 0

    print("Usage: manage.py config check")
    return 1


async def handle_vk_commands(args) -> int:
    """Handle VK API commands."""
    settings = get_settings()
    client = VkApiClient.from_settings(
        settings, rate_limiter=AsyncRateLimiter.per_second(settings.vk_requests_per_second)
    )
    await client.initialize()
    try:
        if args.vk_action == 'verify':
            print("🔐 Verifying VK access token...")
            group = await client.verify_credentials()
            if group:
                print(f"✅ Token is valid for community {group.name} ({group.id})")
            else:
                print("✅ Token is valid")
            return 0

        elif args.vk_action == 'lookup':
            identifier = parse_group_identifier(args.identifier)
            if identifier is None:
                print(f"❌ Malformed group identifier: {args.identifier}")
                return 1
            result = await client.lookup_group(identifier)
            if isinstance(result, NotFound):
                print(f"❌ Group {args.identifier} was not found ({result.reason})")
                return 1
            print(f"✅ {result.name} (id={result.id}, screen_name={result.screen_name})")
            return 0

        elif args.vk_action == 'tail':
            return await tail_group(client, settings, args.group_id, args.cycles)

        print("Usage: manage.py vk {verify,lookup,tail}")
        return 1
    finally:
        await client.close()


async def tail_group(client: VkApiClient, settings, group_id: int, cycles: int) -> int:
    """Watch one group and print its new posts instead of relaying them."""
    poller = UpdatePoller.from_settings(client, GroupSubscriptionRegistry(), settings)

    async def print_post(gid, post):
        print(f"📝 [{gid}] {post.url}\n{post.text}\n")

    poller.add_listener(print_post)

    status = await poller.watch(group_id)
    if status is not WatchStatus.ACTIVE:
        print(f"❌ Cannot watch group {group_id}: {status.value}")
        return 1

    print(f"👀 Watching group {group_id}, press Ctrl+C to stop...")
    completed = 0
    while True:
        await poller.run_cycle()
        completed += 1
        if cycles and completed >= cycles:
            break
        await asyncio.sleep(settings.poll_interval)
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
