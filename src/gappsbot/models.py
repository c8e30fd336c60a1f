"""Pydantic models for inbound chat updates.

These decouple the listener from python-telegram-bot types. Updates are
transient: handed to a handler and discarded, never persisted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    import telegram


class Message(BaseModel):
    """A chat message carried by an update."""

    model_config = ConfigDict(frozen=True)

    message_id: int
    chat_id: int
    sender_id: int | None = None  # None for channel posts
    text: str = ""  # Empty for messages without text (photos, stickers, ...)

    @classmethod
    def from_telegram(cls, message: "telegram.Message") -> "Message":
        """Build from a python-telegram-bot Message."""
        return cls(
            message_id=message.message_id,
            chat_id=message.chat.id,
            sender_id=message.from_user.id if message.from_user else None,
            text=message.text or "",
        )


class Update(BaseModel):
    """An inbound event from the update feed."""

    model_config = ConfigDict(frozen=True)

    update_id: int
    message: Message | None = None

    @classmethod
    def from_telegram(cls, update: "telegram.Update") -> "Update":
        """Build from a python-telegram-bot Update.

        Only the plain `message` field is kept; edits, channel posts and
        callback queries produce an update without a message.
        """
        message = update.message
        return cls(
            update_id=update.update_id,
            message=Message.from_telegram(message) if message is not None else None,
        )
