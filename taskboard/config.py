# Task board configuration
# Override via taskboard.yaml, environment variables or CLI args.

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

CONFIG_PATH = Path(__file__).parent.parent / "taskboard.yaml"


@dataclass
class Config:
    """Runtime configuration for the task board server."""

    # Storage
    db_path: str = "~/.local/share/taskboard/taskboard.db"
    sqlite_timeout: float = 5.0

    # HTTP
    host: str = "127.0.0.1"
    port: int = 5000
    cors_origin: str = "*"

    # Behavior
    log_level: str = "INFO"
    rollback_on_failure: bool = True  # Undo completed steps when a cascade fails

    def resolve_paths(self):
        """Expand ~ in paths."""
        self.db_path = str(Path(self.db_path).expanduser())

    def apply_env(self, environ=None):
        """Environment overrides: TASKBOARD_DB, PORT."""
        environ = os.environ if environ is None else environ
        if environ.get("TASKBOARD_DB"):
            self.db_path = environ["TASKBOARD_DB"]
        if environ.get("PORT"):
            try:
                self.port = int(environ["PORT"])
            except ValueError:
                raise ConfigError(f"PORT must be an integer, got: {environ['PORT']!r}")

    def validate(self):
        """Check value types. Raises ConfigError."""
        for f in fields(self):
            value = getattr(self, f.name)
            expected = f.type
            if expected is float and isinstance(value, int) and not isinstance(value, bool):
                setattr(self, f.name, float(value))
                continue
            if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                raise ConfigError(
                    f"Config key '{f.name}' must be {expected.__name__}, got: {value!r}"
                )
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Unknown log_level: {self.log_level}")
        self.log_level = self.log_level.upper()

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """
        Load config from YAML, falling back to defaults when the file is absent.

        Path resolution: explicit path, then TASKBOARD_CONFIG, then
        taskboard.yaml next to the package.
        """
        environ = os.environ if environ is None else environ
        if path is None:
            path = environ.get("TASKBOARD_CONFIG")
        cfg_path = Path(path) if path else CONFIG_PATH

        data = {}
        if cfg_path.exists():
            try:
                with open(cfg_path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {cfg_path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        cfg = cls(**data)
        cfg.apply_env(environ)
        cfg.validate()
        cfg.resolve_paths()
        return cfg
