"""Pytest fixtures for mdkanban tests."""

from pathlib import Path

import pytest

from mdkanban.config import AppConfig, BoardConfig
from mdkanban.sync import db as dbmod


@pytest.fixture
def temp_vault(tmp_path):
    """Create a temporary vault for testing.

    Args:
        tmp_path: pytest's built-in temporary directory fixture

    Returns:
        Path to temporary vault root
    """
    vault_root = tmp_path / "test_vault"
    vault_root.mkdir()
    return vault_root


@pytest.fixture
def board():
    return BoardConfig(id="b1", name="Test Board", file="Tasks/Board.md")


@pytest.fixture
def app_config(temp_vault, tmp_path, board):
    """AppConfig with one board and a database outside the vault."""
    return AppConfig(
        vault_root=temp_vault,
        boards=[board],
        db_path=tmp_path / "data" / "kanban.sqlite",
        debounce_seconds=0.05,
        replay_delay_seconds=0.05,
    )


@pytest.fixture
def conn(app_config):
    connection = dbmod.open_db(app_config.db_path)
    yield connection
    connection.close()


@pytest.fixture
def write_board(temp_vault):
    """Write markdown under the vault and return its path."""

    def _write(rel_path: str, content: str) -> Path:
        path = temp_vault / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write
