"""Inbound chat command handling."""

from .command_router import CommandOutcome, CommandRouter, parse_command, parse_group_identifier

__all__ = [
    "CommandOutcome",
    "CommandRouter",
    "parse_command",
    "parse_group_identifier",
]
