"""Application configuration loading.

Configuration lives in ``codetree.yaml`` in the working directory. Every
field can be overridden from the environment:

* ``CODETREE_DB_PATH`` - SQLite database file
* ``CODETREE_VERIFY_INVARIANTS`` - run invariant checks after each mutation
* ``CODETREE_PRINCIPAL`` - identity the CLI acts as
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from ruamel.yaml import YAML

CONFIG_FILENAME = "codetree.yaml"
DEFAULT_DB_PATH = "codetree.db"
DEFAULT_PRINCIPAL = "local"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


@dataclass
class AppConfig:
    """Runtime settings for the service and the CLI.

    Attributes:
        db_path: SQLite database file, relative to the config file's directory.
        verify_invariants: Re-check every structural invariant before a
            mutation commits. Costs one full pass over the tree.
        default_principal: Identity used when the CLI is not told otherwise.
    """

    db_path: str = DEFAULT_DB_PATH
    verify_invariants: bool = True
    default_principal: str = DEFAULT_PRINCIPAL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Create config from dictionary.

        Raises:
            ValueError: If a field has the wrong type.
        """
        db_path = data.get("db_path", DEFAULT_DB_PATH)
        principal = data.get("default_principal", DEFAULT_PRINCIPAL)
        if not isinstance(db_path, str) or not db_path:
            raise ValueError("db_path must be a non-empty string")
        if not isinstance(principal, str) or not principal:
            raise ValueError("default_principal must be a non-empty string")
        return cls(
            db_path=db_path,
            verify_invariants=_parse_bool(
                data.get("verify_invariants", True), "verify_invariants"
            ),
            default_principal=principal,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "db_path": self.db_path,
            "verify_invariants": self.verify_invariants,
            "default_principal": self.default_principal,
        }

    def apply_env(self) -> AppConfig:
        """Return a copy with ``CODETREE_*`` environment overrides applied.

        Raises:
            ValueError: If an override has the wrong type.
        """
        db_path = os.getenv("CODETREE_DB_PATH") or self.db_path
        principal = os.getenv("CODETREE_PRINCIPAL") or self.default_principal
        verify = os.getenv("CODETREE_VERIFY_INVARIANTS")
        return AppConfig(
            db_path=db_path,
            verify_invariants=(
                _parse_bool(verify, "CODETREE_VERIFY_INVARIANTS")
                if verify
                else self.verify_invariants
            ),
            default_principal=principal,
        )


class ConfigError(Exception):
    """Raised when configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load config at {path}: {reason}")


def load_config(directory: Path, *, required: bool = False) -> AppConfig:
    """Load configuration from ``codetree.yaml`` in *directory*.

    A missing file yields the defaults unless *required* is set. The
    environment overrides are applied last.

    Raises:
        ConfigError: If the file is required but missing, unreadable, or
            invalid, or if an environment override is invalid.
    """
    config_path = directory / CONFIG_FILENAME

    if not config_path.exists():
        if required:
            raise ConfigError(config_path, "File not found")
        try:
            return AppConfig().apply_env()
        except ValueError as e:
            raise ConfigError(config_path, str(e)) from e

    yaml = YAML()
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise ConfigError(config_path, "Empty file")
        if not isinstance(data, dict):
            raise ConfigError(config_path, "Top level must be a mapping")

        return AppConfig.from_dict(dict(data)).apply_env()
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(config_path, str(e)) from e


def write_config(directory: Path, config: AppConfig) -> Path:
    """Write *config* to ``codetree.yaml`` in *directory*.

    Returns:
        Path of the written file.
    """
    config_path = directory / CONFIG_FILENAME
    directory.mkdir(parents=True, exist_ok=True)
    yaml = YAML()
    yaml.default_flow_style = False
    with config_path.open("w", encoding="utf-8") as f:
        yaml.dump(config.to_dict(), f)
    return config_path


def resolve_db_path(directory: Path, config: AppConfig) -> Path:
    """Resolve ``config.db_path`` against *directory* when relative."""
    path = Path(config.db_path)
    return path if path.is_absolute() else directory / path
