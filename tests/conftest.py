from pathlib import Path

import pytest
import structlog

from mcp_chat.config import Config, set_config
from mcp_chat.llm import set_provider
from mcp_chat.store import set_chat_store


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path):
    """Every test gets default settings and a throwaway database path."""
    monkeypatch.chdir(tmp_path)
    cfg = Config()
    cfg.storage.path = str(tmp_path / "chats.db")
    cfg.chat.smooth_delay_ms = 0
    set_config(cfg)
    set_provider(None)
    set_chat_store(None)
    yield cfg
    set_provider(None)
    set_chat_store(None)


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by CLI commands.

    ``configure_logging`` binds structlog to the current ``sys.stderr``, which
    under ``CliRunner`` is a temporary stream closed after the invocation.
    """
    yield
    structlog.reset_defaults()
