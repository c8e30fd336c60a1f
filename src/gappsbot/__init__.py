"""gappsbot - a long-polling Telegram bot with embedded key/value state."""

__version__ = "0.1.0"
