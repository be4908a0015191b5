"""Configuration management for mdkanban."""

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

DEFAULT_COLUMNS = ["Backlog", "In Progress", "Done"]
CONFIG_FILENAMES = ("config.boards.json", ".mdkanban/config.toml")


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent
        if parent_dir == current_dir:
            return start_dir

        current_dir = parent_dir


class BoardConfig(BaseModel):
    """One board: a markdown file under the vault root and its columns."""

    id: str
    name: str
    file: str = Field(description="Path of the board file relative to the vault root")
    columns: list[str] = Field(default_factory=lambda: list(DEFAULT_COLUMNS))

    model_config = {"frozen": True}


class AppConfig(BaseModel):
    """Boards, vault location, database and watcher timing."""

    vault_root: Path = Field(alias="vaultRoot")
    boards: list[BoardConfig] = Field(default_factory=list)
    default_columns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_COLUMNS), alias="defaultColumns"
    )
    db_path: Path = Field(default=Path("data/kanban.sqlite"), alias="dbPath")
    debounce_seconds: float = Field(default=0.3, ge=0, alias="debounceSeconds")
    replay_delay_seconds: float = Field(default=0.5, ge=0, alias="replayDelaySeconds")
    event_log_path: Optional[Path] = Field(default=None, alias="eventLogPath")

    model_config = {"populate_by_name": True, "frozen": False}

    def board_path(self, board: BoardConfig) -> Path:
        return (self.vault_root / board.file).resolve()

    def get_board(self, board_id: str) -> Optional[BoardConfig]:
        for board in self.boards:
            if board.id == board_id:
                return board
        return None


def _load_config_data(config_path: Path) -> dict[str, Any]:
    if config_path.suffix == ".toml":
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config: {config_path} must contain an object")
    return data


def resolve_config_path(cli_config_path: Optional[str] = None) -> Path:
    """Resolve the board config file with the following precedence:

    1. CLI --config option
    2. MDKANBAN_CONFIG environment variable
    3. config.boards.json or .mdkanban/config.toml at the repository root

    Args:
        cli_config_path: Config path from the CLI --config option

    Returns:
        Absolute path to the board config file

    Raises:
        FileNotFoundError: If the chosen path does not exist or no config is found
    """
    if cli_config_path:
        path = Path(cli_config_path).expanduser().resolve()
        if not path.exists():
            raise FileNotFoundError(f"Specified config file does not exist: {path}")
        return path

    env_path = os.environ.get("MDKANBAN_CONFIG")
    if env_path:
        path = Path(env_path).expanduser().resolve()
        if not path.exists():
            raise FileNotFoundError(f"MDKANBAN_CONFIG path does not exist: {path}")
        return path

    repo_root = _find_repo_root(Path.cwd())
    for name in CONFIG_FILENAMES:
        candidate = repo_root / name
        if candidate.exists():
            return candidate.resolve()

    raise FileNotFoundError(
        "Board config not found. Provide --config, set MDKANBAN_CONFIG, or create "
        f"config.boards.json at {repo_root}."
    )


def load_app_config(cli_config_path: Optional[str] = None) -> AppConfig:
    """Load and validate the board configuration.

    MDKANBAN_VAULT_ROOT (or VAULT_ROOT) and MDKANBAN_DB_PATH override the file.
    Relative paths resolve against the directory holding the config file
    (the project root for .mdkanban/config.toml).

    Args:
        cli_config_path: Config path from the CLI --config option

    Returns:
        AppConfig with absolute vault, database and event log paths

    Raises:
        FileNotFoundError: If no config file can be resolved
        ValueError: If the file is malformed or fails validation
    """
    config_path = resolve_config_path(cli_config_path)
    data = _load_config_data(config_path)
    base_dir = config_path.parent
    if config_path.parent.name == ".mdkanban":
        base_dir = config_path.parent.parent

    env_vault = os.environ.get("MDKANBAN_VAULT_ROOT") or os.environ.get("VAULT_ROOT")
    if env_vault:
        data.pop("vaultRoot", None)
        data["vault_root"] = env_vault
    env_db = os.environ.get("MDKANBAN_DB_PATH")
    if env_db:
        data.pop("dbPath", None)
        data["db_path"] = env_db

    config = AppConfig.model_validate(data)
    return config.model_copy(
        update={
            "vault_root": _absolute(config.vault_root, base_dir),
            "db_path": _absolute(config.db_path, base_dir),
            "event_log_path": (
                _absolute(config.event_log_path, base_dir) if config.event_log_path else None
            ),
        }
    )


def _absolute(path: Path, base_dir: Path) -> Path:
    path = path.expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()
