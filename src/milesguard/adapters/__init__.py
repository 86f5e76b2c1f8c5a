"""Integration adapters for milesguard.

Adapters translate between Telethon, the Telegram Bot API or SQLite and the
core's ports, so the core never imports an integration library.
"""
