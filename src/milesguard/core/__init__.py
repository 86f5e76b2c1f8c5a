"""Core domain package for milesguard.

Core contains the connection lifecycle, deduplication, filtering and dispatch
logic without any Telegram or storage-specific code, keeping the business
logic portable.
"""
