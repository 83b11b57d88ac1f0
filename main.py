"""
Main entry point for the VK group wall to Telegram chat relay.

Loads settings from the environment / .env, starts the Telegram bot and the
VK polling engine, and runs until SIGINT or SIGTERM.
"""
from vkrelay.main import run


if __name__ == "__main__":
    run()
