"""MilesGuard: watch Telegram groups for promotional keywords and forward them."""

__version__ = "1.0.0"
