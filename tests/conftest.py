"""Pytest configuration and shared fixtures."""

import logging
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from gappsbot.models import Message, Update
from gappsbot.transport import UpdateFeed


class FakeTransport:
    """In-memory stand-in for TelegramTransport."""

    def __init__(self) -> None:
        self.feed = UpdateFeed()
        self.sent: list[tuple[int, str, int | None]] = []
        self.subscribed: tuple[int, int] | None = None
        self.connected = False
        self.stopped = False
        self.shut_down = False
        self.send_error: Exception | None = None

    async def connect(self) -> None:
        self.connected = True

    async def subscribe(self, offset: int, timeout: int) -> UpdateFeed:
        self.subscribed = (offset, timeout)
        return self.feed

    async def send(
        self, chat_id: int, text: str, reply_to_message_id: int | None = None
    ) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, text, reply_to_message_id))

    async def stop_receiving_updates(self) -> None:
        self.stopped = True
        self.feed.close()

    async def shutdown(self) -> None:
        self.shut_down = True


def _make_update(
    text: str | None = "/start",
    update_id: int = 1,
    chat_id: int = 100,
    message_id: int = 10,
    sender_id: int = 7,
) -> Update:
    """Build an update; text=None builds one without a message."""
    if text is None:
        return Update(update_id=update_id)
    return Update(
        update_id=update_id,
        message=Message(
            message_id=message_id,
            chat_id=chat_id,
            sender_id=sender_id,
            text=text,
        ),
    )


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """Undo root handler changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def transport() -> FakeTransport:
    """Provide an in-memory transport."""
    return FakeTransport()


@pytest.fixture
def make_update():
    """Provide the update builder."""
    return _make_update


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a complete config file pointing at a temp database."""
    config = {
        "log_level": "INFO",
        "log_json": False,
        "db": {"path": str(tmp_path / "data" / "bot.db"), "timeout": "1s"},
        "telegram": {"token": "123:abc", "timeout": 30},
        "commands": {"start": "/start", "help": "/help"},
        "messages": {"hello": "Hello there", "help": "Some help"},
    }
    config_path = tmp_path / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    return config_path
